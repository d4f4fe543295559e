"""SHA-256 helpers for chunk integrity records.

Digests are taken over the bytes actually uploaded (compressed and, when a
secret is set, encrypted), so a restore can reject a damaged blob before it
ever reaches the decoder.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

_READ_SIZE = 1024 * 1024


def sha256_file(path: Path) -> str:
    """Stream *path* through SHA-256 without loading it into memory."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_READ_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()
