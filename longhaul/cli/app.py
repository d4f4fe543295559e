"""Main Typer application; imports and registers all CLI commands.

Entry point: ``longhaul`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import typer

from longhaul.cli.commands.checkpoint import checkpoint_cmd
from longhaul.cli.commands.purge import purge_cmd
from longhaul.cli.commands.restore import restore_cmd
from longhaul.cli.commands.run import run_cmd
from longhaul.cli.commands.status import status_cmd
from longhaul.cli.common import configure_logging, load_config

app = typer.Typer(
    name="longhaul",
    help="longhaul: checkpoint and resume multi-hour builds across time-boxed CI runs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Override LONGHAUL_LOG_LEVEL (DEBUG, INFO, ...)."
    ),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(log_level or load_config().log_level)


# Register subcommands
app.command(name="run", help="Run the next slice of the build, then package or checkpoint.")(run_cmd)
app.command(name="checkpoint", help="Write a checkpoint of the working tree.")(checkpoint_cmd)
app.command(name="restore", help="Restore the working tree from the last checkpoint.")(restore_cmd)
app.command(name="status", help="Show the stage marker and stored checkpoint.")(status_cmd)
app.command(name="purge", help="Delete the configured checkpoint's blobs.")(purge_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
