"""Helpers shared by the CLI commands: config loading and logging setup."""

from __future__ import annotations

import logging
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

from longhaul.config import LonghaulConfig
from longhaul.core.blob_store import FilesystemBlobStore
from longhaul.core.strategy import CheckpointStrategy, build_strategy, select_strategy_kind


def configure_logging(level: str) -> None:
    """Route all ``longhaul`` logging through a Rich handler on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=Console(stderr=True),
                rich_tracebacks=True,
                show_path=False,
            )
        ],
        force=True,
    )


def load_config(**overrides: Any) -> LonghaulConfig:
    """Read ``LONGHAUL_*`` settings and apply non-None command-line overrides."""
    config = LonghaulConfig()
    update = {k: v for k, v in overrides.items() if v is not None}
    if update:
        config = config.model_copy(update=update)
    return config


def strategy_for(config: LonghaulConfig) -> CheckpointStrategy:
    settings = config.checkpoint_settings()
    store = FilesystemBlobStore(config.blob_store_path)
    kind = select_strategy_kind(config.platform, config.strategy)
    return build_strategy(kind, store, settings)
