"""Stack management commands for Stackforge CLI.

Provides the ``stack``, ``tag`` and ``config`` command groups: everything
that manages stacks without running the engine.
"""

import json
import sys
from pathlib import Path

import click
from pydantic import ValidationError as PydanticValidationError

from ..backend import (
    CreateStackOptions,
    ListStacksFilter,
    NoPreviousDeploymentError,
    UntypedDeployment,
)
from .main import cli, get_backend, parse_pairs, resolve, run_async


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


# =============================================================================
# Stack Commands
# =============================================================================


@cli.group()
def stack() -> None:
    """Manage stacks.

    \b
    Commands:
        stackforge stack init <stack>
        stackforge stack ls
        stackforge stack rm <stack>
        stackforge stack rename <stack> <new-name>
        stackforge stack history <stack>
        stackforge stack export <stack>
        stackforge stack import <stack> <file>
    """
    pass


@stack.command("init")
@click.argument("stack_name")
@click.option("--tag", "-t", multiple=True, help="Tags in key=value format")
def stack_init(stack_name: str, tag: tuple[str, ...]) -> None:
    """Create a new stack.

    \b
    Examples:
        stackforge stack init dev
        stackforge stack init myproject/dev --tag owner=platform
    """
    backend = get_backend()
    ref = resolve(backend, stack_name)
    tags = parse_pairs(tag, "--tag")
    run_async(backend.create_stack(ref, CreateStackOptions(tags=tags)))
    click.echo(f"Created stack {ref}")


@stack.command("ls")
@click.option("--project", "-p", help="Filter by project")
@click.option("--organization", "-o", help="Filter by organization")
@click.option("--tag", "-t", help="Filter by tag name or name=value")
@click.option(
    "--format", "-f", "output_format", type=click.Choice(["text", "json"]), default="text"
)
def stack_ls(
    project: str | None, organization: str | None, tag: str | None, output_format: str
) -> None:
    """List stacks.

    \b
    Examples:
        stackforge stack ls
        stackforge stack ls --project myproject
        stackforge stack ls --tag owner=platform
    """
    tag_name, tag_value = None, None
    if tag:
        tag_name, _, raw_value = tag.partition("=")
        tag_value = raw_value if "=" in tag else None

    backend = get_backend()
    summaries = run_async(
        backend.list_stacks(
            ListStacksFilter(
                organization=organization,
                project=project,
                tag_name=tag_name,
                tag_value=tag_value,
            )
        )
    )

    if output_format == "json":
        click.echo(json.dumps([s.model_dump(mode="json") for s in summaries], indent=2))
        return

    if not summaries:
        click.echo("No stacks found.")
        return

    click.echo(f"{'Stack':<45} {'Last update':<20} {'Resources':<10}")
    click.echo("-" * 77)
    for s in summaries:
        count = "-" if s.resource_count is None else str(s.resource_count)
        click.echo(f"{str(s.ref):<45} {_format_time(s.last_update):<20} {count:<10}")


@stack.command("rm")
@click.argument("stack_name")
@click.option("--force", is_flag=True, help="Remove even if the stack still has resources")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def stack_rm(stack_name: str, force: bool, yes: bool) -> None:
    """Remove a stack.

    Refuses to remove a stack that still has resources unless --force is
    given. Removing with --force forgets those resources without deleting
    them.

    \b
    Examples:
        stackforge stack rm dev
        stackforge stack rm dev --force --yes
    """
    backend = get_backend()
    ref = resolve(backend, stack_name)

    if not yes and not click.confirm(f"Remove stack {ref}?"):
        click.echo("Aborted.")
        sys.exit(0)

    had_resources = run_async(backend.remove_stack(ref, force))
    click.echo(f"Removed stack {ref}")
    if had_resources:
        click.echo("Warning: the stack still had resources; they were not destroyed.")


@stack.command("rename")
@click.argument("stack_name")
@click.argument("new_name")
def stack_rename(stack_name: str, new_name: str) -> None:
    """Rename a stack within its project.

    \b
    Examples:
        stackforge stack rename dev staging
    """
    backend = get_backend()
    ref = resolve(backend, stack_name)
    new_ref = run_async(backend.rename_stack(ref, new_name))
    click.echo(f"Renamed {ref} to {new_ref}")


@stack.command("history")
@click.argument("stack_name")
@click.option(
    "--format", "-f", "output_format", type=click.Choice(["text", "json"]), default="text"
)
def stack_history(stack_name: str, output_format: str) -> None:
    """Show the update history of a stack.

    \b
    Examples:
        stackforge stack history dev
        stackforge stack history dev --format json
    """
    backend = get_backend()
    ref = resolve(backend, stack_name)
    history = run_async(backend.get_history(ref))

    if output_format == "json":
        click.echo(json.dumps([h.model_dump(mode="json") for h in history], indent=2))
        return

    if not history:
        click.echo(f"Stack {ref} has no history.")
        return

    click.echo(f"{'#':<5} {'Kind':<10} {'Result':<10} {'Ended':<20} {'Changes':<25} Message")
    click.echo("-" * 90)
    for h in history:
        c = h.resource_changes
        changes = f"+{c.create} ~{c.update} -{c.delete} +-{c.replace}"
        click.echo(
            f"{h.version:<5} {h.kind.value:<10} {h.result.value:<10} "
            f"{_format_time(h.end_time):<20} {changes:<25} {h.message}"
        )
        if h.error:
            click.echo(f"      error: {h.error}")


@stack.command("export")
@click.argument("stack_name")
@click.option("--file", "output_file", type=click.Path(dir_okay=False), help="Write to file")
def stack_export(stack_name: str, output_file: str | None) -> None:
    """Export a stack's deployment as JSON.

    \b
    Examples:
        stackforge stack export dev > dev.json
        stackforge stack export dev --file dev.json
    """
    backend = get_backend()
    ref = resolve(backend, stack_name)
    deployment = run_async(backend.export_deployment(ref))
    text = deployment.model_dump_json(indent=2)

    if output_file:
        Path(output_file).write_text(text + "\n")
        click.echo(f"Exported {ref} to {output_file}")
    else:
        click.echo(text)


@stack.command("import")
@click.argument("stack_name")
@click.argument("input_file", type=click.Path(dir_okay=False))
def stack_import(stack_name: str, input_file: str) -> None:
    """Replace a stack's deployment with an exported one.

    \b
    Examples:
        stackforge stack import dev dev.json
    """
    path = Path(input_file)
    if not path.exists():
        raise click.ClickException(f"Deployment file not found: {input_file}")
    try:
        deployment = UntypedDeployment.model_validate_json(path.read_text())
    except PydanticValidationError as e:
        raise click.ClickException(f"Invalid deployment file {input_file}: {e}") from None

    backend = get_backend()
    ref = resolve(backend, stack_name)
    run_async(backend.import_deployment(ref, deployment))
    click.echo(f"Imported deployment into {ref}")


# =============================================================================
# Tag Commands
# =============================================================================


@cli.group()
def tag() -> None:
    """Manage stack tags."""
    pass


@tag.command("ls")
@click.argument("stack_name")
def tag_ls(stack_name: str) -> None:
    """List a stack's tags."""
    backend = get_backend()
    ref = resolve(backend, stack_name)
    tags = run_async(backend.get_stack_tags(ref))

    if not tags:
        click.echo(f"Stack {ref} has no tags.")
        return
    for name in sorted(tags):
        click.echo(f"{name}={tags[name]}")


@tag.command("set")
@click.argument("stack_name")
@click.argument("pairs", nargs=-1, required=True)
@click.option("--replace", is_flag=True, help="Replace all tags instead of merging")
def tag_set(stack_name: str, pairs: tuple[str, ...], replace: bool) -> None:
    """Set tags on a stack.

    \b
    Examples:
        stackforge tag set dev owner=platform team=infra
        stackforge tag set dev owner=platform --replace
    """
    backend = get_backend()
    ref = resolve(backend, stack_name)
    updates = parse_pairs(pairs, "tag")

    async def _run() -> dict[str, str]:
        tags = {} if replace else await backend.get_stack_tags(ref)
        tags.update(updates)
        await backend.update_stack_tags(ref, tags)
        return tags

    tags = run_async(_run())
    click.echo(f"Stack {ref} now has {len(tags)} tag(s).")


# =============================================================================
# Config Commands
# =============================================================================


@cli.group()
def config() -> None:
    """Inspect stack configuration."""
    pass


@config.command("get")
@click.argument("stack_name")
@click.argument("key", required=False)
@click.option("--show-secrets", is_flag=True, help="Decrypt secret values")
@click.option("--latest", is_flag=True, help="Configuration of the most recent operation")
def config_get(stack_name: str, key: str | None, show_secrets: bool, latest: bool) -> None:
    """Show stack configuration.

    Secret values are shown as [secret] unless --show-secrets is given,
    which needs STACKFORGE_CONFIG_PASSPHRASE.

    \b
    Examples:
        stackforge config get dev
        stackforge config get dev region
        stackforge config get dev --show-secrets
    """
    backend = get_backend()
    ref = resolve(backend, stack_name)

    async def _run() -> dict[str, str]:
        if latest:
            try:
                cfg = await backend.get_latest_configuration(ref)
            except NoPreviousDeploymentError:
                raise click.ClickException(f"Stack {ref} has no previous deployment.") from None
        else:
            cfg = await backend.get_stack_config(ref)
        if show_secrets:
            return cfg.decrypt(await backend.get_stack_crypter(ref))
        return cfg.redacted()

    values = run_async(_run())

    if key is not None:
        if key not in values:
            raise click.ClickException(f"Configuration key {key!r} not found in {ref}")
        click.echo(values[key])
        return

    if not values:
        click.echo(f"Stack {ref} has no configuration.")
        return
    for name in sorted(values):
        click.echo(f"{name}={values[name]}")
