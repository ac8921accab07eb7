"""Shared test fixtures."""

import pytest

from stackforge.backend import LocalBackend, MemoryBackend, StackReference


@pytest.fixture(autouse=True)
def _reset_cli_backend():
    """Drop the CLI's cached backend between tests."""
    from stackforge.cli import main

    main._backend = None
    yield
    main._backend = None


@pytest.fixture
def memory_backend():
    return MemoryBackend(project="web", passphrase="correct horse battery staple")


@pytest.fixture
def local_backend(tmp_path):
    return LocalBackend(tmp_path / "state", project="web", passphrase="correct horse")


@pytest.fixture
def ref():
    return StackReference(organization="organization", project="web", name="dev")
