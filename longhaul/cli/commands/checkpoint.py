"""``longhaul checkpoint``: write a checkpoint of the working tree by hand.

The checkpointed paths are consumed, exactly as at the end of an
unfinished ``longhaul run``.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from longhaul.cli.common import load_config, strategy_for
from longhaul.core.errors import LonghaulError

console = Console()


def checkpoint_cmd(
    paths: list[str] = typer.Argument(
        None, help="Paths relative to the work dir (default: LONGHAUL_CHECKPOINT_PATHS)."
    ),
    work_dir: Path = typer.Option(
        None, "--work-dir", "-w", help="Build working directory."
    ),
) -> None:
    """Archive, upload and remove the checkpoint paths."""
    config = load_config(work_dir=work_dir)
    relative = list(paths) if paths else list(config.checkpoint_paths)
    strategy = strategy_for(config)

    console.print(
        f"[bold cyan]Checkpointing {', '.join(relative)} as {config.checkpoint_name}...[/bold cyan]"
    )
    try:
        count = strategy.write(config.work_dir, relative, config.checkpoint_name)
    except (LonghaulError, OSError) as exc:
        console.print(f"[bold red]Checkpoint failed:[/bold red] {exc}")
        raise typer.Exit(code=1)

    console.print(
        f"[bold green]Checkpoint {config.checkpoint_name} written[/bold green] "
        f"({count} blob(s), {strategy.kind.value})"
    )
