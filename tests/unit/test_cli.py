"""Tests for CLI commands using Click's CliRunner."""

import json

import pytest
import yaml
from click.testing import CliRunner

from stackforge import __version__
from stackforge.cli.main import cli

runner = CliRunner()

REF = "organization/web/dev"


@pytest.fixture(autouse=True)
def backend_env(tmp_path, monkeypatch):
    """Point the CLI at a fresh local backend."""
    monkeypatch.setenv("STACKFORGE_BACKEND_URL", f"file://{tmp_path / 'state'}")
    monkeypatch.setenv("STACKFORGE_PROJECT", "web")
    monkeypatch.setenv("STACKFORGE_CONFIG_PASSPHRASE", "correct horse")
    monkeypatch.delenv("STACKFORGE_ORGANIZATION", raising=False)


@pytest.fixture
def program_file(tmp_path):
    path = tmp_path / "program.yaml"
    path.write_text(
        yaml.dump(
            {
                "resources": {
                    "logs": {"type": "aws:s3:Bucket", "properties": {"acl": "private"}},
                    "db": {"type": "aws:rds:Instance", "properties": {"engine": "postgres"}},
                }
            }
        )
    )
    return path


def _invoke(*args: str, **kwargs):
    return runner.invoke(cli, list(args), **kwargs)


def _init(name: str = "dev", *extra: str):
    result = _invoke("stack", "init", name, *extra)
    assert result.exit_code == 0, result.output
    return result


def _up(program_file, *extra: str):
    result = _invoke("up", "dev", "--program", str(program_file), *extra)
    assert result.exit_code == 0, result.output
    return result


class TestCliBasics:
    """Tests for the top-level group."""

    def test_version(self):
        result = _invoke("--version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self):
        result = _invoke("--help")
        assert result.exit_code == 0
        for command in ("stack", "tag", "config", "preview", "up", "refresh", "destroy"):
            assert command in result.output

    def test_invalid_backend_url(self, monkeypatch):
        monkeypatch.setenv("STACKFORGE_BACKEND_URL", "s3://bucket")
        result = _invoke("stack", "ls")
        assert result.exit_code != 0
        assert "Invalid backend configuration" in result.output

    def test_invalid_stack_reference(self):
        result = _invoke("stack", "init", "a/b/c/d")
        assert result.exit_code == 2
        assert "too many segments" in result.output


class TestStackCommands:
    """Tests for the stack command group."""

    def test_init_and_ls(self):
        result = _init("dev", "--tag", "owner=platform")
        assert f"Created stack {REF}" in result.output

        result = _invoke("stack", "ls")
        assert result.exit_code == 0
        assert REF in result.output

    def test_init_twice_fails(self):
        _init()
        result = _invoke("stack", "init", "dev")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_init_invalid_tag_format(self):
        result = _invoke("stack", "init", "dev", "--tag", "no-equals")
        assert result.exit_code == 2
        assert "Expected key=value" in result.output

    def test_ls_empty(self):
        result = _invoke("stack", "ls")
        assert result.exit_code == 0
        assert "No stacks found." in result.output

    def test_ls_filters_and_json(self, program_file):
        _init("dev", "--tag", "env=dev")
        _init("prod", "--tag", "env=prod")
        _up(program_file)

        result = _invoke("stack", "ls", "--tag", "env=prod", "--format", "json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [s["ref"]["name"] for s in data] == ["prod"]

        data = json.loads(_invoke("stack", "ls", "--format", "json").stdout)
        assert {s["ref"]["name"]: s["resource_count"] for s in data} == {"dev": 2, "prod": None}

    def test_rm(self):
        _init()
        result = _invoke("stack", "rm", "dev", "--yes")
        assert result.exit_code == 0
        assert f"Removed stack {REF}" in result.output
        assert "No stacks found." in _invoke("stack", "ls").output

    def test_rm_with_resources_needs_force(self, program_file):
        _init()
        _up(program_file)

        result = _invoke("stack", "rm", "dev", "--yes")
        assert result.exit_code == 1
        assert "destroy them first" in result.output

        result = _invoke("stack", "rm", "dev", "--yes", "--force")
        assert result.exit_code == 0
        assert "still had resources" in result.output

    def test_rm_aborted(self):
        _init()
        result = _invoke("stack", "rm", "dev", input="n\n")
        assert result.exit_code == 0
        assert "Aborted." in result.output
        assert REF in _invoke("stack", "ls").output

    def test_rm_missing(self):
        result = _invoke("stack", "rm", "dev", "--yes")
        assert result.exit_code == 1
        assert "does not exist" in result.output

    def test_rename(self):
        _init()
        result = _invoke("stack", "rename", "dev", "staging")
        assert result.exit_code == 0
        assert f"Renamed {REF} to organization/web/staging" in result.output

    def test_history(self, program_file):
        _init()
        result = _invoke("stack", "history", "dev")
        assert "has no history" in result.output

        _up(program_file, "--message", "first")
        result = _invoke("stack", "history", "dev")
        assert result.exit_code == 0
        assert "update" in result.output
        assert "first" in result.output

        data = json.loads(_invoke("stack", "history", "dev", "--format", "json").stdout)
        assert data[0]["result"] == "succeeded"
        assert data[0]["resource_changes"]["create"] == 2

    def test_export_and_import(self, program_file, tmp_path):
        _init()
        _init("copy")
        _up(program_file)
        exported = tmp_path / "dev.json"

        result = _invoke("stack", "export", "dev", "--file", str(exported))
        assert result.exit_code == 0
        assert json.loads(exported.read_text())["version"] == 3

        result = _invoke("stack", "import", "copy", str(exported))
        assert result.exit_code == 0
        assert "Imported deployment into organization/web/copy" in result.output

        copied = json.loads(_invoke("stack", "export", "copy").stdout)
        assert len(copied["deployment"]["resources"]) == 2

    def test_import_missing_file(self, tmp_path):
        _init()
        result = _invoke("stack", "import", "dev", str(tmp_path / "nope.json"))
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_import_invalid_file(self, tmp_path):
        _init()
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        result = _invoke("stack", "import", "dev", str(path))
        assert result.exit_code == 1
        assert "Invalid deployment file" in result.output

    def test_import_wrong_version(self, tmp_path):
        _init()
        path = tmp_path / "old.json"
        path.write_text(json.dumps({"version": 1, "deployment": {}}))
        result = _invoke("stack", "import", "dev", str(path))
        assert result.exit_code == 1
        assert "unsupported deployment version 1" in result.output


class TestTagCommands:
    """Tests for the tag command group."""

    def test_ls_without_tags(self):
        _init()
        result = _invoke("tag", "ls", "dev")
        assert "has no tags" in result.output

    def test_set_merges(self):
        _init("dev", "--tag", "owner=platform")
        result = _invoke("tag", "set", "dev", "team=infra")
        assert result.exit_code == 0
        assert "now has 2 tag(s)" in result.output
        assert _invoke("tag", "ls", "dev").output.splitlines() == ["owner=platform", "team=infra"]

    def test_set_replace(self):
        _init("dev", "--tag", "owner=platform")
        _invoke("tag", "set", "dev", "team=infra", "--replace")
        assert _invoke("tag", "ls", "dev").output.splitlines() == ["team=infra"]

    def test_set_invalid_tag(self):
        _init()
        result = _invoke("tag", "set", "dev", "bad tag=x")
        assert result.exit_code == 1
        assert "invalid tag name" in result.output


class TestConfigCommands:
    """Tests for the config command group."""

    def test_empty_config(self):
        _init()
        result = _invoke("config", "get", "dev")
        assert "has no configuration" in result.output

    def test_secrets_are_redacted(self, program_file):
        _init()
        _up(program_file, "-c", "region=eu-west-1", "--secret", "token=hunter2")

        result = _invoke("config", "get", "dev")
        assert result.exit_code == 0
        assert "region=eu-west-1" in result.output
        assert "token=[secret]" in result.output
        assert "hunter2" not in result.output

        result = _invoke("config", "get", "dev", "token", "--show-secrets")
        assert result.output.strip() == "hunter2"

    def test_unknown_key(self):
        _init()
        result = _invoke("config", "get", "dev", "region")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_latest_without_deployment(self):
        _init()
        result = _invoke("config", "get", "dev", "--latest")
        assert result.exit_code == 1
        assert "no previous deployment" in result.output


class TestUpdateCommands:
    """Tests for preview, up, refresh and destroy."""

    def test_preview_shows_steps(self, program_file):
        _init()
        result = _invoke("preview", "dev", "--program", str(program_file))
        assert result.exit_code == 0
        assert "+  urn:stackforge:aws:s3:Bucket::logs" in result.output
        assert "Preview succeeded: 2 created" in result.output
        assert "has no history" in _invoke("stack", "history", "dev").output

    def test_up_then_unchanged(self, program_file):
        _init()
        result = _up(program_file)
        assert "Update succeeded: 2 created" in result.output

        result = _up(program_file)
        assert "Update succeeded: 2 unchanged" in result.output

    def test_preview_show_same(self, program_file):
        _init()
        _up(program_file)
        result = _invoke("preview", "dev", "-p", str(program_file), "--show-same")
        assert "urn:stackforge:aws:rds:Instance::db" in result.output

    def test_up_with_target(self, program_file):
        _init()
        result = _up(program_file, "--target", "urn:stackforge:aws:rds:Instance::db")
        assert "Update succeeded: 1 created" in result.output

    def test_up_missing_stack(self, program_file):
        result = _invoke("up", "dev", "--program", str(program_file))
        assert result.exit_code == 1
        assert "does not exist" in result.output

    def test_up_invalid_program(self, tmp_path):
        _init()
        path = tmp_path / "broken.yaml"
        path.write_text("resources: [unclosed")
        result = _invoke("up", "dev", "--program", str(path))
        assert result.exit_code == 1
        assert "invalid YAML" in result.output

    def test_up_requires_program(self):
        _init()
        result = _invoke("up", "dev")
        assert result.exit_code == 2

    def test_refresh(self, program_file):
        _init()
        _up(program_file)
        result = _invoke("refresh", "dev")
        assert result.exit_code == 0
        assert "Refresh succeeded" in result.output

    def test_destroy(self, program_file):
        _init()
        _up(program_file)
        result = _invoke("destroy", "dev", "--yes")
        assert result.exit_code == 0
        assert "Destroy succeeded: 2 deleted" in result.output

        result = _invoke("stack", "rm", "dev", "--yes")
        assert result.exit_code == 0

    def test_destroy_aborted(self, program_file):
        _init()
        _up(program_file)
        result = _invoke("destroy", "dev", input="n\n")
        assert "Aborted." in result.output
        data = json.loads(_invoke("stack", "ls", "--format", "json").stdout)
        assert data[0]["resource_count"] == 2
