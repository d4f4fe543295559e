"""``longhaul restore``: rebuild the working tree from the last checkpoint."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from longhaul.cli.common import load_config, strategy_for
from longhaul.core.errors import LonghaulError
from longhaul.core.stage_machine import StageMachine

console = Console()


def restore_cmd(
    work_dir: Path = typer.Option(
        None, "--work-dir", "-w", help="Directory to restore into."
    ),
) -> None:
    """Download, decode and extract the checkpoint into the work dir."""
    config = load_config(work_dir=work_dir)
    strategy = strategy_for(config)

    console.print(f"[bold cyan]Restoring {config.checkpoint_name}...[/bold cyan]")
    try:
        count = strategy.restore(config.work_dir, config.checkpoint_name)
        stage = StageMachine.for_work_dir(config.work_dir, config.build_mode).current_stage()
    except (LonghaulError, OSError) as exc:
        console.print(f"[bold red]Restore failed:[/bold red] {exc}")
        raise typer.Exit(code=1)

    console.print(
        f"[bold green]Restored {count} blob(s) into {config.work_dir}[/bold green]; "
        f"stage is [bold]{stage.value}[/bold]"
    )
