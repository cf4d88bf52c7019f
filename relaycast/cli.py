"""
relaycast CLI - publish and fetch broadcast values from the shell.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from .auth.identity import KeyPair
from .auth.security import SecurityManager
from .broadcast.manager import BroadcastManager
from .config import BroadcastConfig, DEFAULT_DATA_DIR
from .errors import BroadcastError
from .io.serializer import create_serializer

console = Console()


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler()]
    )


def _security(key_path: Optional[str], config: BroadcastConfig) -> Optional[SecurityManager]:
    if not key_path:
        if config.authenticate:
            raise click.UsageError("Authentication is enabled but no --key was given")
        return None
    return SecurityManager(keypair=KeyPair.load(Path(key_path)), token_ttl=config.token_ttl)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--data-dir', type=click.Path(), help='Data directory')
@click.pass_context
def main(ctx, verbose, data_dir):
    """📡 relaycast - HTTP broadcast variables"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    ctx.obj['config'] = BroadcastConfig.load(Path(data_dir) if data_dir else DEFAULT_DATA_DIR)
    setup_logging(verbose)


@main.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--host', help='Interface to bind')
@click.option('--port', '-p', type=int, help='Port to bind (0 = ephemeral)')
@click.option('--ttl', type=float, help='Delete published files after this many seconds')
@click.option('--no-compress', is_flag=True, help='Disable compression')
@click.option('--key', type=click.Path(exists=True, dir_okay=False), help='Cluster key file')
@click.pass_context
def serve(ctx, files: Tuple[str, ...], host, port, ttl, no_compress, key):
    """Publish FILES as broadcasts and serve them until interrupted."""
    config: BroadcastConfig = ctx.obj['config']
    if host:
        config.bind_host = host
    if port is not None:
        config.broadcast_port = port
    if ttl is not None:
        config.cleaner_ttl = ttl
    if no_compress:
        config.compress = False

    manager = BroadcastManager(is_origin=True, config=config, security=_security(key, config))
    try:
        manager.initialize()
    except BroadcastError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    table = Table(title="Published broadcasts")
    table.add_column("ID", style="cyan")
    table.add_column("File")
    table.add_column("Bytes", justify="right")
    table.add_column("URL", style="dim")

    try:
        for file_name in files:
            data = Path(file_name).read_bytes()
            broadcast = manager.new_broadcast(data)
            table.add_row(
                str(broadcast.id),
                file_name,
                f"{len(data):,}",
                f"{config.server_uri}/{broadcast.block_id.name}",
            )

        console.print(table)
        console.print(f"\n[green]✓ Serving at {config.server_uri}[/green] (Ctrl-C to stop)")

        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/yellow]")
    finally:
        manager.stop()


@main.command()
@click.argument('uri')
@click.argument('broadcast_id', type=int)
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write bytes values to this file')
@click.option('--no-compress', is_flag=True, help='Origin publishes uncompressed')
@click.option('--serializer', type=click.Choice(['pickle', 'json']), default='pickle')
@click.option('--key', type=click.Path(exists=True, dir_okay=False), help='Cluster key file')
@click.pass_context
def fetch(ctx, uri, broadcast_id, output, no_compress, serializer, key):
    """Fetch broadcast BROADCAST_ID from the origin at URI."""
    config: BroadcastConfig = ctx.obj['config'].copy(server_uri=uri.rstrip('/'))
    if no_compress:
        config.compress = False

    manager = BroadcastManager(
        is_origin=False,
        config=config,
        serializer=create_serializer(serializer),
        security=_security(key, config),
    )
    manager.initialize()

    try:
        started = time.perf_counter()
        value = manager.service.fetch(broadcast_id)
        elapsed = time.perf_counter() - started
    except BroadcastError as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)
    finally:
        manager.stop()

    console.print(f"[green]✓ Fetched broadcast {broadcast_id}[/green] in {elapsed:.3f}s")
    if isinstance(value, (bytes, bytearray)):
        if output:
            Path(output).write_bytes(value)
            console.print(f"   Wrote {len(value):,} bytes to {output}")
        else:
            console.print(f"   {len(value):,} bytes")
    else:
        console.print(value)


@main.command()
@click.argument('path', type=click.Path(dir_okay=False))
def keygen(path):
    """Generate a cluster key at PATH for authenticated fetches."""
    key_path = Path(path)
    if key_path.exists() and not click.confirm(f"{path} exists. Overwrite?"):
        return
    keypair = KeyPair.generate()
    keypair.save(key_path)
    console.print(f"[green]✓ Cluster key written to {path}[/green] (key id [cyan]{keypair.key_id()}[/cyan])")


@main.command(name="config")
@click.option('--save', is_flag=True, help='Write the effective configuration to the data directory')
@click.pass_context
def show_config(ctx, save):
    """Show the effective configuration."""
    config: BroadcastConfig = ctx.obj['config']

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    for key, value in config.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)

    if save:
        config.save()
        console.print(f"\n[green]✓ Saved to {config.config_path}[/green]")


if __name__ == "__main__":
    main()
