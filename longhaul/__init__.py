"""longhaul: chunked checkpoint/resume for builds longer than their hosts live.

A working tree is streamed into a tar archive split into fixed-size
chunks; each chunk is compressed (zstd), optionally encrypted (libsodium
secretstream) and uploaded to a blob store before the next one is cut,
so the local disk never holds more than two chunks. A persistent stage
marker (INIT -> BUILD -> [BUILD_DIST] -> PACKAGE) travels with the
checkpoint, letting each time-boxed invocation resume where the last
one stopped.
"""

__version__ = "0.1.0"
__description__ = "Chunked checkpoint/resume for multi-hour builds on time-boxed CI hosts"

from longhaul.core.orchestrator import BuildOrchestrator
from longhaul.cli.app import app as cli

__all__ = ["BuildOrchestrator", "cli", "__version__"]
