"""``longhaul run``: one time-boxed build invocation.

Restores the previous checkpoint (``--from-checkpoint``) or starts a
fresh stage marker, runs stages until the build finishes or stops short,
then either uploads the final package or writes a checkpoint. Prints
``finished=true|false`` and appends it to ``LONGHAUL_OUTPUT_FILE`` when
set, so a CI workflow can decide whether to schedule another run.
"""

from __future__ import annotations

import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from longhaul.cli.common import load_config
from longhaul.core.errors import LonghaulError
from longhaul.core.orchestrator import BuildOrchestrator
from longhaul.models.stages import BuildMode

console = Console()


def _raise_interrupt(signum: int, frame: object) -> None:
    raise KeyboardInterrupt(f"received signal {signum}")


def write_output(output_file: Path | None, finished: bool) -> None:
    """Append ``finished=...`` to a CI output file such as ``$GITHUB_OUTPUT``."""
    if output_file is None:
        return
    with open(output_file, "a", encoding="utf-8") as fh:
        fh.write(f"finished={str(finished).lower()}\n")


def run_cmd(
    finished: bool = typer.Option(
        False,
        "--finished",
        help="The previous invocation already finished the build.",
    ),
    from_checkpoint: bool = typer.Option(
        False,
        "--from-checkpoint/--fresh",
        help="Restore the previous checkpoint before running stages.",
    ),
    work_dir: Path = typer.Option(
        None, "--work-dir", "-w", help="Build working directory."
    ),
    platform: str = typer.Option(None, "--platform", help="linux, macos or windows."),
    arch: str = typer.Option(None, "--arch", help="Target architecture, e.g. x64."),
    build_mode: BuildMode = typer.Option(
        None, "--mode", help="component, or full to add the build_dist stage."
    ),
) -> None:
    """Run the next slice of a long build."""
    config = load_config(
        work_dir=work_dir, platform=platform, arch=arch, build_mode=build_mode
    )
    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        orchestrator = BuildOrchestrator.from_config(
            config, finished=finished, from_checkpoint=from_checkpoint
        )
        result = orchestrator.run()
    except KeyboardInterrupt as exc:
        console.print(f"[bold red]Interrupted:[/bold red] {exc}")
        raise typer.Exit(code=1)
    except (LonghaulError, ValueError, OSError) as exc:
        console.print("finished=false")
        write_output(config.output_file, False)
        console.print(f"[bold red]Build invocation failed:[/bold red] {exc}")
        raise typer.Exit(code=1)
    finally:
        signal.signal(signal.SIGTERM, previous)

    console.print(f"finished={str(result.finished).lower()}")
    write_output(config.output_file, result.finished)

    if result.fatal:
        console.print(f"[bold red]Build invocation failed:[/bold red] {result.error}")
        raise typer.Exit(code=1)

    if result.finished:
        lines = ["[bold green]Build finished.[/bold green]"]
        if result.package_path is not None:
            lines.append(f"[bold]Package:[/bold] {result.package_path}")
        border = "green"
    else:
        lines = [
            "[bold yellow]Build not finished; progress checkpointed.[/bold yellow]",
            f"[bold]Stage:[/bold]  {result.stage.value if result.stage else 'unknown'}",
            f"[bold]Blobs:[/bold]  {result.chunk_count}",
        ]
        if result.error:
            lines.append(f"[dim]{result.error}[/dim]")
        border = "yellow"
    console.print(
        Panel("\n".join(lines), title=f"[bold]{config.checkpoint_name}[/bold]", border_style=border)
    )
