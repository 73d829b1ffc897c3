from pathlib import Path

import click
from rich.console import Console

from pvesync.utils.logging import setup_logging
from pvesync.workspace import Workspace

from .operations import apply, plan, sync
from .snapshots import history, show

console = Console()


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enables verbose mode.')
@click.option('--quiet', '-q', is_flag=True, help='Enables quiet mode.')
@click.option('--workspace', '-w', type=click.Path(file_okay=False), default=None, help='Workspace directory.')
@click.pass_context
def app(ctx, verbose, quiet, workspace):
    """
    pvesync: Proxmox VE state reconciliation and artifact generation.
    """
    ctx.ensure_object(dict)
    ctx.obj['VERBOSE'] = verbose
    ctx.obj['QUIET'] = quiet
    ctx.obj['WORKSPACE'] = workspace

    if verbose:
        setup_logging(force=True, level="DEBUG")
    elif quiet:
        setup_logging(force=True, level="ERROR")
    else:
        setup_logging()


@app.command()
@click.argument('path', type=click.Path(file_okay=False), default='.')
@click.option('--host', required=True, help='Proxmox VE API host.')
@click.option('--port', type=int, default=8006, show_default=True, help='Proxmox VE API port.')
@click.option('--token-id', default=None, help='API token id, e.g. root@pam!pvesync.')
@click.option('--no-verify-tls', is_flag=True, help='Skip TLS certificate verification.')
@click.option('--artifact-dir', default='infrastructure', show_default=True, help='Artifact tree directory.')
def init(path: str, host: str, port: int, token_id, no_verify_tls: bool, artifact_dir: str) -> None:
    """Create a pvesync workspace."""
    root = Path(path)
    if (root / '.pvesync' / 'config.yml').is_file():
        raise click.ClickException(f"{root} is already a pvesync workspace")
    workspace = Workspace.create(
        root,
        api_host=host,
        api_port=port,
        api_token_id=token_id,
        verify_tls=not no_verify_tls,
        artifact_dir=artifact_dir,
    )
    console.print(f"[green]✅ Workspace created at {workspace.root}[/green]")
    console.print("Set PVESYNC_API_TOKEN_SECRET and run [bold]pvesync sync[/bold].")


app.add_command(sync, name='sync')
app.add_command(plan, name='plan')
app.add_command(apply, name='apply')
app.add_command(history, name='history')
app.add_command(show, name='show')

if __name__ == '__main__':
    app()
