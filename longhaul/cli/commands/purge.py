"""``longhaul purge``: delete a checkpoint's blobs from the store."""

from __future__ import annotations

import typer
from rich.console import Console

from longhaul.cli.common import load_config, strategy_for

console = Console()


def purge_cmd(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Remove the manifest and chunk blobs of the configured checkpoint."""
    config = load_config()
    if not yes:
        typer.confirm(f"Delete checkpoint {config.checkpoint_name}?", abort=True)
    strategy_for(config).discard(config.checkpoint_name)
    console.print(f"[bold green]Checkpoint {config.checkpoint_name} purged.[/bold green]")
