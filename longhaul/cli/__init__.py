"""longhaul CLI, a Typer-based command-line interface.

Provides the ``longhaul`` command with subcommands for running a build
invocation, writing and restoring checkpoints by hand, inspecting the
stage marker and remote manifest, and purging checkpoint blobs.

All output uses Rich for formatted terminal display.
"""
