"""Main CLI entry point for Stackforge.

Provides stack management and update commands against the configured
backend (STACKFORGE_BACKEND_URL, default ``file://``):
    stackforge stack init <stack>
    stackforge stack ls
    stackforge stack rm <stack>
    stackforge stack rename <stack> <new-name>
    stackforge stack history <stack>
    stackforge stack export <stack>
    stackforge stack import <stack> <file>
    stackforge tag ls|set <stack>
    stackforge config get <stack> [key]
    stackforge preview|up|refresh|destroy <stack> --program <file>
"""

import asyncio
import logging
import signal
from typing import Any

import click

from .. import __version__
from ..backend import Backend, CancellationToken, StackforgeError, StackReference
from ..config import BackendConfig
from ..factory import create_backend

_logger = logging.getLogger(__name__)

# Global backend instance
_backend: Backend | None = None


def get_backend() -> Backend:
    """Get or create the backend from environment configuration."""
    global _backend
    if _backend is None:
        try:
            config = BackendConfig.from_env()
        except ValueError as e:
            raise click.ClickException(f"Invalid backend configuration: {e}") from None
        _backend = create_backend(config)
    return _backend


def run_async(coro: Any) -> Any:
    """Run an async coroutine synchronously.

    StackforgeError is reported as a ClickException.
    """
    try:
        return asyncio.run(coro)
    except StackforgeError as e:
        raise click.ClickException(str(e)) from None


async def with_interrupt(token: CancellationToken, coro: Any) -> Any:
    """Await ``coro`` with Ctrl-C mapped to ``token.cancel()``.

    The operation observes the token at its next step boundary and bails
    out cleanly instead of being torn down mid-write.
    """
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        _logger.debug("SIGINT handler unavailable; Ctrl-C will not cancel cooperatively")
    try:
        return await coro
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def resolve(backend: Backend, stack: str) -> StackReference:
    """Parse a stack argument with the backend's defaults."""
    try:
        return backend.parse_stack_reference(stack)
    except StackforgeError as e:
        raise click.BadParameter(str(e), param_hint="STACK") from None


def parse_pairs(pairs: tuple[str, ...], option: str) -> dict[str, str]:
    """Parse repeated key=value options."""
    parsed: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.UsageError(f"Invalid {option} format {pair!r}. Expected key=value")
        k, v = pair.split("=", 1)
        parsed[k] = v
    return parsed


@click.group()
@click.version_option(version=__version__, prog_name="stackforge")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Stackforge - stack and backend orchestration.

    \b
    Manage stacks:
        stackforge stack init dev
        stackforge stack ls
        stackforge stack rm dev

    \b
    Run operations:
        stackforge preview dev --program program.yaml
        stackforge up dev --program program.yaml
        stackforge destroy dev
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Main entry point."""
    cli()


# Command modules register themselves on ``cli``
from . import stacks, updates  # noqa: E402, F401

if __name__ == "__main__":
    main()
