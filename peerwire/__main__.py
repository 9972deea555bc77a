#!/usr/bin/env python3
"""peerwire command line: download (or seed) one torrent."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from peerwire import __version__
from peerwire.config import init_config, set_config
from peerwire.core import load_torrent
from peerwire.exceptions import ConfigurationError, DescriptorError, PeerwireError, StorageFailure
from peerwire.models import Config, DiskConfig, NetworkConfig, TorrentDescriptor
from peerwire.session import SwarmManager, TrackerClient
from peerwire.storage import FileStorage

logger = logging.getLogger(__name__)
console = Console(stderr=True)

EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_STORAGE = 3
EXIT_INTERRUPTED = 130


def apply_overrides(config: Config, options: dict[str, Any]) -> Config:
    """Fold command line options into the configuration.

    Raises:
        ConfigurationError: If an option value fails validation
    """
    updates = {}
    try:
        if options.get("port") is not None:
            updates["network"] = NetworkConfig(**{**config.network.model_dump(), "listen_port": options["port"]})
        if options.get("output") is not None:
            updates["disk"] = DiskConfig(**{**config.disk.model_dump(), "download_dir": str(options["output"])})
    except PydanticValidationError as e:
        msg = f"Invalid command line option: {e}"
        raise ConfigurationError(msg) from e
    return config.model_copy(update=updates) if updates else config


async def run_session(
    descriptor: TorrentDescriptor,
    config: Config,
    peers: list[str],
    *,
    listen: bool = True,
) -> None:
    """Run one swarm until the download completes."""
    storage = FileStorage(descriptor, Path(config.disk.download_dir), max_workers=config.disk.disk_workers)
    swarm = SwarmManager(descriptor, storage, config)
    tracker = None
    if not peers:
        tracker = TrackerClient(swarm.peer_id, config)
        await tracker.start()

    try:
        await swarm.start(listen=listen, tracker=tracker)
        if peers:
            await swarm.add_peers(peers)

        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task(descriptor.name, total=descriptor.total_length)
            waiter = asyncio.create_task(swarm.wait_complete())
            while not waiter.done():
                done = descriptor.total_length - swarm.piece_manager.bytes_left
                progress.update(task_id, completed=done)
                await asyncio.wait({waiter}, timeout=0.5)
            waiter.result()
        console.print(f"[green]Completed[/green] {descriptor.name} ({descriptor.total_length} bytes)")
    finally:
        await swarm.stop()
        if tracker is not None:
            await tracker.stop()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("torrent", type=click.Path(dir_okay=False))
@click.option("--output", "-o", type=click.Path(file_okay=False), help="Download directory (default: disk.download_dir)")
@click.option("--port", type=int, help="Port to listen on (default: network.listen_port)")
@click.option("--config", "-c", "config_file", type=click.Path(dir_okay=False), help="Configuration file path")
@click.option(
    "--peer",
    "peers",
    multiple=True,
    metavar="HOST:PORT",
    help="Connect to this peer instead of asking the tracker (repeatable)",
)
@click.option("--no-listen", is_flag=True, help="Do not accept incoming peers")
@click.version_option(__version__, prog_name="peerwire")
@click.pass_context
def cli(ctx, torrent, output, port, config_file, peers, no_listen):
    """peerwire - a BitTorrent peer engine."""
    try:
        manager = init_config(config_file)
        config = apply_overrides(manager.config, {"output": output, "port": port})
        set_config(config)
        descriptor = load_torrent(torrent)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        ctx.exit(EXIT_CONFIG)
    except DescriptorError as e:
        console.print(f"[red]Invalid torrent:[/red] {e}")
        ctx.exit(EXIT_ERROR)

    logger.info("Loaded %s: %s pieces, %s bytes", descriptor.name, descriptor.num_pieces, descriptor.total_length)

    try:
        asyncio.run(run_session(descriptor, config, list(peers), listen=not no_listen))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        ctx.exit(EXIT_INTERRUPTED)
    except StorageFailure as e:
        console.print(f"[red]Storage failure:[/red] {e}")
        ctx.exit(EXIT_STORAGE)
    except PeerwireError as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(EXIT_ERROR)


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
