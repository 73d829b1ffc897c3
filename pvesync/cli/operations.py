import json

import click
from rich.console import Console
from rich.json import JSON

from .utils import handle_async_command, open_orchestrator, print_diff, print_skipped

console = Console()

POLICY_CHOICE = click.Choice(["manual", "preferRemote", "preferLocal"])


@click.command()
@click.option('--allow-partial', is_flag=True, help='Commit even if some nodes could not be discovered.')
@click.option('--node', 'nodes', multiple=True, help='Only discover the given node(s).')
@click.option('--policy', type=POLICY_CHOICE, default=None, help='Conflict resolution policy.')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_async_command
async def sync(ctx, allow_partial, nodes, policy, json_output: bool) -> None:
    """Discover remote state, commit a snapshot and regenerate artifacts."""
    async with open_orchestrator(ctx) as orchestrator:
        report = await orchestrator.sync(
            allow_partial=True if allow_partial else None,
            node_filter=list(nodes) or None,
            policy=policy,
        )
    if json_output:
        console.print(JSON(json.dumps(report.to_dict())))
        return
    print_skipped(report.skipped_nodes)
    print_diff(report.diff, f"Snapshot {report.snapshot.sequence}")
    console.print(
        f"[green]✅ Snapshot {report.snapshot.sequence} committed; "
        f"{len(report.artifacts.written)} artifact(s) written, {len(report.artifacts.removed)} removed[/green]"
    )


@click.command()
@click.option('--no-refresh', is_flag=True, help='Skip remote discovery; only compare artifacts with stored state.')
@click.option('--node', 'nodes', multiple=True, help='Only discover the given node(s).')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_async_command
async def plan(ctx, no_refresh: bool, nodes, json_output: bool) -> None:
    """Show pending artifact edits and remote drift without changing anything."""
    async with open_orchestrator(ctx) as orchestrator:
        report = await orchestrator.plan(refresh=not no_refresh, node_filter=list(nodes) or None)
    if json_output:
        console.print(JSON(json.dumps(report.to_dict())))
        return
    if not report.artifacts_present:
        console.print("[yellow]No artifacts generated yet; run `pvesync sync` first.[/yellow]")
    else:
        print_diff(report.drift, "Pending artifact edits")
    if report.remote is not None:
        print_skipped(report.skipped_nodes)
        print_diff(report.remote, "Remote changes since last sync")


@click.command()
@click.option('--dry-run', is_flag=True, help='List the mutations without executing them.')
@click.option('--policy', type=POLICY_CHOICE, default=None, help='Conflict resolution policy.')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_async_command
async def apply(ctx, dry_run: bool, policy, json_output: bool) -> None:
    """Push artifact edits to the cluster, then re-sync."""
    async with open_orchestrator(ctx) as orchestrator:
        report = await orchestrator.apply(dry_run=dry_run, policy=policy)
    if json_output:
        console.print(JSON(json.dumps(report.to_dict())))
        return
    if not report.mutations:
        console.print("[green]Nothing to apply.[/green]")
        return
    for mutation in report.mutations:
        marker = "[dim](dry run)[/dim] " if dry_run else ""
        console.print(f"{marker}- {mutation.describe()}")
    for task in report.tasks:
        colour = "green" if task.success else "red"
        console.print(f"  [{colour}]{task.task.upid}: {task.outcome.value}[/{colour}]")
    if report.sync is not None:
        console.print(f"[green]✅ Re-synced as snapshot {report.sync.snapshot.sequence}[/green]")
    if not report.success:
        raise click.ClickException("One or more tasks did not succeed")
