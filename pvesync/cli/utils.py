import asyncio
import functools
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import click
from rich.console import Console
from rich.table import Table

from pvesync.client.proxmox import ProxmoxApiClient
from pvesync.errors import PveSyncError
from pvesync.model.diff import Diff
from pvesync.orchestrator import SyncOrchestrator
from pvesync.store.state_store import StateStore
from pvesync.workspace import Workspace

console = Console()


def print_error(error: PveSyncError) -> None:
    console.print(f"[red]Error: {error.message}[/red]")
    for key, value in error.to_dict()["context"].items():
        if value in (None, [], {}):
            continue
        console.print(f"  [dim]{key}:[/dim] {value}")


def handle_async_command(async_func):
    """Decorator to handle async CLI commands."""
    @functools.wraps(async_func)
    def wrapper(*args, **kwargs):
        try:
            return asyncio.run(async_func(*args, **kwargs))
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except click.ClickException:
            raise
        except PveSyncError as e:
            print_error(e)
            sys.exit(1)
        except Exception as e:
            console.print(f"[red]Error: {e}[/red]")
            sys.exit(1)
    return wrapper


def resolve_workspace(ctx: click.Context) -> Workspace:
    explicit: Optional[str] = ctx.obj.get("WORKSPACE")
    workspace = Workspace.detect(Path(explicit) if explicit else Path.cwd())
    if workspace is None:
        raise click.ClickException("Not inside a pvesync workspace; run `pvesync init` first.")
    return workspace


@asynccontextmanager
async def open_orchestrator(ctx: click.Context, **overrides) -> AsyncIterator[SyncOrchestrator]:
    """Build the orchestrator for the current workspace and release its resources afterwards."""
    workspace = resolve_workspace(ctx)
    settings = workspace.load_settings(**overrides)
    context = workspace.context(**overrides)
    client = ProxmoxApiClient.from_settings(settings)
    store = StateStore(context.db_path, commit_wait=context.commit_wait)
    try:
        yield SyncOrchestrator(context, client, store)
    finally:
        await client.close()
        store.close()


def diff_table(diff: Diff, title: str) -> Table:
    table = Table(title=title, show_lines=False)
    table.add_column("Change", style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Details")
    for identity in diff.added:
        table.add_row("[green]+ added[/green]", str(identity), "")
    for identity in diff.removed:
        table.add_row("[red]- removed[/red]", str(identity), "")
    for change in diff.changed:
        details = ", ".join(f"{d.field}: {d.old!r} -> {d.new!r}" for d in change.deltas)
        table.add_row("[yellow]~ changed[/yellow]", str(change.identity), details)
    for conflict in diff.conflicts:
        table.add_row("[magenta]! conflict[/magenta]", str(conflict.identity), "changed remotely and in artifacts")
    return table


def print_diff(diff: Diff, title: str) -> None:
    if diff.is_empty:
        console.print(f"[green]{title}: no changes[/green]")
    else:
        console.print(diff_table(diff, title))


def print_skipped(skipped: dict) -> None:
    for node, reason in sorted(skipped.items()):
        console.print(f"[yellow]Skipped node {node}: {reason}[/yellow]")
