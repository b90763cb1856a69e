"""
Shard Store CLI

Command-line interface for running the coordinator and storage nodes, and
for issuing file operations against a running coordinator.

Usage:
    shardstore coordinator             # Run the coordinator
    shardstore storage-node 1          # Run storage node 1
    shardstore ping                    # Check the coordinator answers
    shardstore ls                      # List stored files
    shardstore upload FILE             # Upload a file
    shardstore download NAME           # Download a file
    shardstore rm NAME                 # Remove a file
"""

import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.logging import RichHandler
from rich.markup import escape

from .config import load_config, EXAMPLE_CONFIG, DEFAULT_CONFIG_FILE
from .client import ShardStoreClient
from .coordinator import Coordinator
from .exceptions import ShardStoreError, ConfigurationError
from .storage import StorageNode

console = Console()


def setup_logging(verbose: bool = False, level_name: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              default=str(DEFAULT_CONFIG_FILE), help='Properties file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """Shard Store - files split across storage nodes."""
    try:
        config = load_config(Path(config_path))
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        sys.exit(2)
    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


# === Servers ===

@cli.command()
@click.option('--port', type=int, help='Listening port (overrides configuration)')
@click.pass_context
def coordinator(ctx, port):
    """Run the coordinator."""
    config = ctx.obj['config']
    if port is not None:
        config = replace(config, port=port)

    try:
        node = Coordinator(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {escape(str(e))}[/red]")
        sys.exit(2)

    table = Table(title="Storage Nodes")
    table.add_column("Shard", justify="right")
    table.add_column("Address", style="yellow")
    table.add_column("Directory", style="blue")
    for index, endpoint in enumerate(config.endpoints, start=1):
        table.add_row(str(index), endpoint.address, str(endpoint.directory))

    async def run():
        await node.start()
        console.print(Panel.fit(
            f"[bold green]Coordinator Started[/bold green]\n\n"
            f"Port: [yellow]{node.port}[/yellow]\n"
            f"Storage nodes: [yellow]{len(config.endpoints)}[/yellow]",
            title="Coordinator"
        ))
        console.print(table)
        console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
        try:
            await node.serve_forever()
        finally:
            await node.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Coordinator stopped[/yellow]")


@cli.command('storage-node')
@click.argument('number', type=click.IntRange(min=1))
@click.pass_context
def storage_node(ctx, number):
    """Run storage node NUMBER from the configuration."""
    config = ctx.obj['config']
    try:
        endpoint = config.storage_node(number)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(2)

    node = StorageNode(endpoint.directory, host=config.host, port=endpoint.port,
                       chunk_size=config.chunk_size)

    async def run():
        await node.start()
        console.print(Panel.fit(
            f"[bold green]Storage Node {number} Started[/bold green]\n\n"
            f"Port: [yellow]{node.port}[/yellow]\n"
            f"Directory: [blue]{endpoint.directory}[/blue]",
            title="Storage Node"
        ))
        try:
            await node.serve_forever()
        finally:
            await node.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Storage node stopped[/yellow]")


@cli.command('example-config')
def example_config():
    """Print an example configuration file."""
    click.echo(EXAMPLE_CONFIG, nl=False)


# === Client commands ===

def client_options(command):
    command = click.option('--host', default='localhost', help='Coordinator host')(command)
    command = click.option('--port', type=int, default=None,
                           help='Coordinator port (defaults to the configured port)')(command)
    return command


def make_client(ctx, host, port) -> ShardStoreClient:
    config = ctx.obj['config']
    return ShardStoreClient(host=host, port=port or config.port,
                            timeout=config.connect_timeout,
                            chunk_size=config.chunk_size)


def run_client(coro):
    """Run a client coroutine, turning failures into exit status 1."""
    try:
        return asyncio.run(coro)
    except ShardStoreError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        sys.exit(1)


@cli.command()
@client_options
@click.pass_context
def ping(ctx, host, port):
    """Check that the coordinator accepts connections."""
    client = make_client(ctx, host, port)
    if run_client(client.ping()):
        console.print(f"[green]✓ Connected to {client.address}[/green]")
    else:
        console.print(f"[red]✗ Cannot connect to {client.address}[/red]")
        sys.exit(1)


@cli.command('ls')
@client_options
@click.pass_context
def list_files(ctx, host, port):
    """List stored files."""
    client = make_client(ctx, host, port)
    names = run_client(client.list_files())

    if not names:
        console.print("[yellow]No files stored[/yellow]")
        return

    table = Table(title="Stored Files")
    table.add_column("Name", style="cyan")
    for name in sorted(names):
        table.add_row(escape(name))
    console.print(table)


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--name', '-n', default=None, help='Stored name (defaults to the file name)')
@client_options
@click.pass_context
def upload(ctx, file_path, name, host, port):
    """Upload a file."""
    client = make_client(ctx, host, port)
    path = Path(file_path)
    stored_name = name or path.name

    if run_client(client.upload(path, stored_name)):
        console.print(f"[green]✓ Uploaded {escape(stored_name)} "
                      f"({format_size(path.stat().st_size)})[/green]")
    else:
        console.print(f"[red]✗ Upload of {escape(stored_name)} failed[/red]")
        sys.exit(1)


@cli.command()
@click.argument('name')
@click.option('--output-dir', '-o', type=click.Path(file_okay=False), default=None,
              help='Destination directory (defaults to the configured download directory)')
@client_options
@click.pass_context
def download(ctx, name, output_dir, host, port):
    """Download a file."""
    client = make_client(ctx, host, port)
    dest_dir = Path(output_dir) if output_dir else ctx.obj['config'].download_dir

    result = run_client(client.download(name, dest_dir))
    if result is None:
        console.print(f"[red]✗ {escape(name)} does not exist on the server[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Downloaded to: {escape(str(result))}[/green]")


@cli.command('rm')
@click.argument('name')
@client_options
@click.pass_context
def remove(ctx, name, host, port):
    """Remove a file from every storage node."""
    client = make_client(ctx, host, port)
    if run_client(client.remove(name)):
        console.print(f"[green]✓ Removed {escape(name)}[/green]")
    else:
        console.print(f"[red]✗ Removal of {escape(name)} failed[/red]")
        sys.exit(1)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
