"""Update commands for Stackforge CLI.

Handles preview, up, refresh and destroy: each loads the stack, builds an
UpdateOperation from the program file and flags, and renders the outcome.
Ctrl-C cancels the running operation cooperatively; steps already applied
stay recorded.
"""

import sys
from pathlib import Path

import click

from ..backend import (
    Bailed,
    CancellationToken,
    Failed,
    Program,
    ResourceChanges,
    StepOp,
    Succeeded,
    UpdateOperation,
    UpdateOptions,
    UpdateOutcome,
    load_program,
)
from ..backend.operation import DiagEvent, Severity
from .main import cli, get_backend, parse_pairs, resolve, run_async, with_interrupt

_OP_SYMBOLS = {
    StepOp.CREATE: "+",
    StepOp.UPDATE: "~",
    StepOp.DELETE: "-",
    StepOp.REPLACE: "+-",
    StepOp.SAME: " ",
}


class EchoSink:
    """Prints resource steps and warnings as they happen."""

    def __init__(self, show_same: bool = False) -> None:
        self._show_same = show_same

    def emit(self, event: DiagEvent) -> None:
        if event.op is not None:
            if event.op == StepOp.SAME and not self._show_same:
                return
            click.echo(f"  {_OP_SYMBOLS[event.op]:<2} {event.urn}")
        elif event.severity in (Severity.WARNING, Severity.ERROR):
            click.echo(f"  {event.severity.value}: {event.message}", err=True)


def _summarize(changes: ResourceChanges) -> str:
    parts = [
        f"{count} {label}"
        for label, count in (
            ("created", changes.create),
            ("updated", changes.update),
            ("deleted", changes.delete),
            ("replaced", changes.replace),
            ("unchanged", changes.same),
        )
        if count
    ]
    return ", ".join(parts) if parts else "no changes"


def _report(verb: str, outcome: UpdateOutcome) -> None:
    changes, result = outcome
    match result:
        case Succeeded():
            click.echo(f"{verb} succeeded: {_summarize(changes)}")
        case Bailed():
            click.echo(f"{verb} cancelled after {changes.applied} change(s): {_summarize(changes)}")
            sys.exit(1)
        case Failed(error=error):
            if changes.applied:
                click.echo(f"Applied before failure: {_summarize(changes)}")
            raise click.ClickException(f"{verb} failed: {error}")


def _run_operation(
    kind: str,
    stack_name: str,
    program_file: str | None,
    message: str,
    targets: tuple[str, ...],
    config: tuple[str, ...] = (),
    secret: tuple[str, ...] = (),
    show_same: bool = False,
) -> UpdateOutcome:
    backend = get_backend()
    ref = resolve(backend, stack_name)
    plain = parse_pairs(config, "--config")
    secrets = parse_pairs(secret, "--secret")

    async def _run() -> UpdateOutcome:
        program: Program | None = None
        if program_file is not None:
            program = load_program(Path(program_file))

        stack = await backend.get_stack(ref)
        cfg = await stack.config()
        for k, v in plain.items():
            cfg = cfg.with_value(k, v)
        if secrets:
            crypter = await backend.get_stack_crypter(ref)
            for k, v in secrets.items():
                cfg = cfg.with_value(k, v, crypter)

        token = CancellationToken()
        op = UpdateOperation(
            options=UpdateOptions(message=message, targets=list(targets)),
            config=cfg,
            program=program,
            sink=EchoSink(show_same=show_same),
            cancellation=token,
        )
        return await with_interrupt(token, getattr(stack, kind)(op))

    return run_async(_run())


def _update_options(func):
    """Options shared by every update command."""
    func = click.option("--target", multiple=True, help="Restrict to these resource urns")(func)
    func = click.option("--message", "-m", default="", help="Message recorded in history")(func)
    return func


def _config_options(func):
    func = click.option("--secret", multiple=True, help="Secret config in key=value format")(func)
    func = click.option("--config", "-c", multiple=True, help="Config in key=value format")(func)
    return func


# =============================================================================
# Preview / Up
# =============================================================================


@cli.command()
@click.argument("stack_name")
@click.option("--program", "-p", "program_file", required=True, help="Program YAML file")
@click.option("--show-same", is_flag=True, help="Also list unchanged resources")
@_config_options
@_update_options
def preview(
    stack_name: str,
    program_file: str,
    show_same: bool,
    config: tuple[str, ...],
    secret: tuple[str, ...],
    message: str,
    target: tuple[str, ...],
) -> None:
    """Show what an update would change.

    \b
    Examples:
        stackforge preview dev --program program.yaml
    """
    outcome = _run_operation(
        "preview", stack_name, program_file, message, target, config, secret, show_same
    )
    _report("Preview", outcome)


@cli.command()
@click.argument("stack_name")
@click.option("--program", "-p", "program_file", required=True, help="Program YAML file")
@_config_options
@_update_options
def up(
    stack_name: str,
    program_file: str,
    config: tuple[str, ...],
    secret: tuple[str, ...],
    message: str,
    target: tuple[str, ...],
) -> None:
    """Converge a stack onto its program.

    Config and secrets given here are stored with the stack once the
    update succeeds.

    \b
    Examples:
        stackforge up dev --program program.yaml
        stackforge up dev -p program.yaml -c region=eu-west-1 --secret token=abc
    """
    outcome = _run_operation("update", stack_name, program_file, message, target, config, secret)
    _report("Update", outcome)


# =============================================================================
# Refresh / Destroy
# =============================================================================


@cli.command()
@click.argument("stack_name")
@_update_options
def refresh(stack_name: str, message: str, target: tuple[str, ...]) -> None:
    """Reconcile a stack's snapshot with the live state of its resources.

    \b
    Examples:
        stackforge refresh dev
    """
    outcome = _run_operation("refresh", stack_name, None, message, target)
    _report("Refresh", outcome)


@cli.command()
@click.argument("stack_name")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@_update_options
def destroy(stack_name: str, yes: bool, message: str, target: tuple[str, ...]) -> None:
    """Delete every resource in a stack.

    The stack itself remains; remove it with ``stackforge stack rm``.

    \b
    Examples:
        stackforge destroy dev
        stackforge destroy dev --yes
    """
    if not yes and not click.confirm(f"Destroy all resources in {stack_name}?"):
        click.echo("Aborted.")
        sys.exit(0)

    outcome = _run_operation("destroy", stack_name, None, message, target)
    _report("Destroy", outcome)
