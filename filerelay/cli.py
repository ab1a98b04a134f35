#!/usr/bin/env python3
"""
File Relay CLI

Command-line interface for sending files through a relay room.

Usage:
    filerelay relay                # Run the relay server
    filerelay send FILE            # Send a file to the room
    filerelay receive              # Receive and store files (+ REST API)
    filerelay files                # List received files
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskID
from rich.panel import Panel
from rich.logging import RichHandler

from .config import load_config
from .node import TransferNode
from .storage import init_database
from .transfer import CompletedFile, ProgressSink, RelayServer, SendFailure

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


class ReceiveProgress(ProgressSink):
    """Shows one progress bar per incoming file."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self._tasks: Dict[str, TaskID] = {}

    def on_progress(self, file_id: str, fraction: float) -> None:
        task = self._tasks.get(file_id)
        if task is None:
            task = self.progress.add_task(f"Receiving {file_id[:40]}", total=100)
            self._tasks[file_id] = task
        self.progress.update(task, completed=fraction * 100)

    def on_completed(self, completed: CompletedFile) -> None:
        task = self._tasks.pop(completed.file_id, None)
        if task is not None:
            self.progress.remove_task(task)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--data-dir', default=None, help='Data directory')
@click.option('--host', default=None, help='Relay host')
@click.option('--port', default=None, type=int, help='Relay port')
@click.option('--room', default=None, help='Room name')
@click.pass_context
def cli(ctx, verbose, config_path, data_dir, host, port, room):
    """File Relay - chunked file transfer through a relay room."""
    config = load_config(Path(config_path) if config_path else None)

    # Command-line options win over file and environment
    if data_dir:
        config.data_dir = Path(data_dir)
    if host:
        config.relay_host = host
    if port:
        config.relay_port = port
    if room:
        config.room = room

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.pass_context
def relay(ctx):
    """Run the relay server."""
    config = ctx.obj['config']

    async def run():
        server = RelayServer(config.listen_host, config.relay_port)
        await server.start()

        console.print(Panel.fit(
            f"[bold green]Relay Started[/bold green]\n\n"
            f"Listening: [yellow]{config.listen_host}:{server.port}[/yellow]",
            title="Relay Info"
        ))
        console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

        try:
            await server.serve_forever()
        finally:
            await server.stop()
            console.print("[green]Relay stopped[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--mime-type', default=None, help='MIME type (guessed if omitted)')
@click.option('--chunk-size', default=None, type=int, help='Chunk size in bytes')
@click.pass_context
def send(ctx, file_path, mime_type, chunk_size):
    """Send a file to everyone in the room."""
    config = ctx.obj['config']
    file_path = Path(file_path)

    if chunk_size is not None and chunk_size <= 0:
        raise click.BadParameter("must be positive", param_hint='--chunk-size')

    async def run() -> bool:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            task = progress.add_task("Connecting to relay...", total=100)

            def update_progress(file_id: str, fraction: float):
                progress.update(task, completed=fraction * 100,
                                description=f"Sending {file_path.name}...")

            node = TransferNode(config, send_progress=update_progress)
            try:
                await node.start()
            except ConnectionError as e:
                console.print(f"\n[red]✗ {e}[/red]")
                return False

            try:
                job = await node.send_file(file_path, mime_type=mime_type,
                                           chunk_size=chunk_size)
                progress.update(task, completed=100, description="Done!")
            except SendFailure as e:
                console.print(f"\n[red]✗ Send failed: {e}[/red]")
                return False
            finally:
                await node.stop()

        console.print(Panel.fit(
            f"[bold green]File Sent[/bold green]\n\n"
            f"Name: [cyan]{job.name}[/cyan]\n"
            f"Size: [yellow]{format_size(job.source_length)}[/yellow]\n"
            f"Chunks: [yellow]{job.total_chunks}[/yellow]\n"
            f"Room: [blue]{config.room}[/blue]\n\n"
            f"[bold]File ID:[/bold]\n"
            f"[green]{job.file_id}[/green]",
            title="Sent File"
        ))
        return True

    if not asyncio.run(run()):
        ctx.exit(1)


@cli.command()
@click.option('--api/--no-api', default=True, help='Serve the REST API')
@click.option('--api-port', default=None, type=int, help='REST API port')
@click.pass_context
def receive(ctx, api, api_port):
    """Join the room and store every file that arrives."""
    config = ctx.obj['config']
    api_port = api_port or config.api_port

    async def on_file_received(completed: CompletedFile, path: Path):
        if path is None:
            console.print(f"[red]✗ Received {completed.name} but could not store it[/red]")
            return
        console.print(f"[green]✓ Received {completed.name} "
                      f"({format_size(completed.size)}) -> {path}[/green]")

    async def run() -> bool:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            console=console,
        ) as progress:
            node = TransferNode(config, progress_sink=ReceiveProgress(progress),
                                on_file_received=on_file_received)
            try:
                await node.start()
            except ConnectionError as e:
                console.print(f"[red]✗ {e}[/red]")
                return False

            console.print(Panel.fit(
                f"[bold green]Receiving[/bold green]\n\n"
                f"Node ID: [cyan]{node.node_id}[/cyan]\n"
                f"Relay: [yellow]{node.client.endpoint}[/yellow]\n"
                f"Room: [blue]{config.room}[/blue]\n"
                f"Data Dir: [blue]{config.data_dir}[/blue]",
                title="Node Info"
            ))

            try:
                if api:
                    console.print(f"\n[dim]REST API available at http://localhost:{api_port}[/dim]")
                    console.print(f"[dim]API docs at http://localhost:{api_port}/docs[/dim]\n")

                    from .api import run_api_server
                    await run_api_server(node, host=config.listen_host, port=api_port)
                else:
                    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")
                    while node.client.is_connected:
                        await asyncio.sleep(1)
                    console.print("[yellow]Relay connection closed[/yellow]")
            finally:
                await node.stop()
                console.print("[green]Node stopped[/green]")
        return True

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
        return
    if not ok:
        ctx.exit(1)


@cli.command('files')
@click.option('--limit', default=50, help='Maximum rows to show')
@click.option('--sent', is_flag=True, help='Show sent files instead of received')
@click.pass_context
def list_files(ctx, limit, sent):
    """List received (or sent) files."""
    config = ctx.obj['config']

    async def run():
        db = await init_database(config.data_dir)
        try:
            if sent:
                rows = await db.get_sent_files(limit)
            else:
                rows = await db.get_received_files(limit)
        finally:
            await db.close()

        if not rows:
            console.print(f"[yellow]No {'sent' if sent else 'received'} files[/yellow]")
            return

        table = Table(title="Sent Files" if sent else "Received Files")
        table.add_column("Name", style="cyan")
        table.add_column("Size", justify="right", style="yellow")
        table.add_column("Type")
        table.add_column("Status" if sent else "From", style="blue")
        table.add_column("File ID" if sent else "Stored ID", style="green")

        for row in rows:
            table.add_row(
                row['name'],
                format_size(row['size']),
                row['mime_type'] or "-",
                (row['status'] if sent else row['sender_id']) or "-",
                row['file_id'] if sent else row['id'],
            )

        console.print(table)

    asyncio.run(run())


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
