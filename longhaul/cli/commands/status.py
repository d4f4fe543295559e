"""``longhaul status``: local stage marker and remote checkpoint at a glance."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from longhaul.cli.common import load_config
from longhaul.core.blob_store import BlobNotFoundError, FilesystemBlobStore
from longhaul.core.checkpoint import CheckpointReader, ManifestNotFound
from longhaul.core.errors import LonghaulError
from longhaul.core.stage_machine import StageMachine
from longhaul.core.strategy import select_strategy_kind
from longhaul.models.config import StrategyKind

console = Console()


def status_cmd(
    work_dir: Path = typer.Option(
        None, "--work-dir", "-w", help="Build working directory."
    ),
) -> None:
    """Show the current stage and the stored checkpoint, if any."""
    config = load_config(work_dir=work_dir)
    machine = StageMachine.for_work_dir(config.work_dir, config.build_mode)
    try:
        stage = machine.current_stage().value
    except LonghaulError as exc:
        stage = f"[red]{exc}[/red]"
    marker = "present" if machine.marker_path.exists() else "missing"

    table = Table(title=f"Checkpoint {config.checkpoint_name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Work dir", str(config.work_dir))
    table.add_row("Stage", f"{stage} (marker {marker})")

    store = FilesystemBlobStore(config.blob_store_path)
    kind = select_strategy_kind(config.platform, config.strategy)
    table.add_row("Strategy", kind.value)

    if kind == StrategyKind.CHUNKED:
        try:
            manifest = CheckpointReader(store).fetch_manifest(config.checkpoint_name)
        except ManifestNotFound:
            table.add_row("Remote", "[yellow]no checkpoint[/yellow]")
        except LonghaulError as exc:
            table.add_row("Remote", f"[red]{exc}[/red]")
        else:
            table.add_row("Remote", "[green]manifest present[/green]")
            table.add_row("Chunks", str(manifest.volume_count))
            table.add_row("Stored bytes", str(manifest.stored_bytes))
            table.add_row("Encrypted", "yes" if manifest.encrypted else "no")
            table.add_row("Written", manifest.timestamp.isoformat())
    else:
        try:
            handle = store.get_metadata(config.checkpoint_name)
        except BlobNotFoundError:
            table.add_row("Remote", "[yellow]no checkpoint[/yellow]")
        else:
            table.add_row("Remote", "[green]archive present[/green]")
            table.add_row("Stored bytes", str(handle.size))
            table.add_row("Written", handle.created_at.isoformat())

    console.print(table)
