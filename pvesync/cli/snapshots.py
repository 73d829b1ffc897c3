import json

import click
from rich.console import Console
from rich.json import JSON
from rich.table import Table

from .utils import handle_async_command, open_orchestrator, print_diff

console = Console()


@click.command()
@click.option('--limit', type=int, default=20, show_default=True, help='Number of snapshots to show.')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_async_command
async def history(ctx, limit: int, json_output: bool) -> None:
    """List snapshots, newest first."""
    async with open_orchestrator(ctx) as orchestrator:
        snapshots = await orchestrator.history(limit)
    if json_output:
        console.print(JSON(json.dumps([s.to_dict() for s in snapshots])))
        return
    if not snapshots:
        console.print("[yellow]No snapshots yet.[/yellow]")
        return
    table = Table(title="Snapshots")
    table.add_column("Seq", justify="right")
    table.add_column("Created")
    table.add_column("Resources", justify="right")
    table.add_column("+", justify="right", style="green")
    table.add_column("-", justify="right", style="red")
    table.add_column("~", justify="right", style="yellow")
    for snapshot in snapshots:
        summary = snapshot.diff.summary()
        table.add_row(
            str(snapshot.sequence),
            snapshot.created_at.isoformat(timespec="seconds"),
            str(len(snapshot.resources)),
            str(summary["added"]),
            str(summary["removed"]),
            str(summary["changed"]),
        )
    console.print(table)


@click.command()
@click.argument('sequence', type=int)
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_async_command
async def show(ctx, sequence: int, json_output: bool) -> None:
    """Show one snapshot's diff and audit trail."""
    async with open_orchestrator(ctx) as orchestrator:
        snapshot = await orchestrator.show(sequence)
    if json_output:
        data = snapshot.to_dict()
        data["resources"] = snapshot.resources.to_records()
        console.print(JSON(json.dumps(data)))
        return
    console.print(f"[bold blue]Snapshot {snapshot.sequence}[/bold blue] ({snapshot.created_at.isoformat(timespec='seconds')})")
    print_diff(snapshot.diff, "Changes")
    for line in snapshot.audit:
        console.print(f"  [dim]{line}[/dim]")
