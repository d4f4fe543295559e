"""Chunk codec: streaming zstd compression and secretstream encryption.

Every transform reads its input in bounded blocks, writes a sibling file
with a suffix added (``.zst``, ``.enc``) or removed, deletes the input on
success and removes its own partial output on failure. On the write path
encryption always follows compression, so a stored chunk is named
``*.zst`` or ``*.zst.enc`` and the name alone says whether a secret is
needed to read it.

Encrypted file layout::

    b"LHSS1" | salt (16) | secretstream header (24) | frame ... | final frame

Each frame is at most 1 MiB of plaintext plus the 17 byte authentication
overhead. The key is derived from the secret with Argon2id and the
per-file salt. The last frame carries ``TAG_FINAL``; a stream that ends
without it, or continues after it, is rejected.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import nacl.bindings as sodium
import nacl.exceptions
import nacl.pwhash
import nacl.utils
import zstandard as zstd

from longhaul.core.errors import LonghaulError

logger = logging.getLogger(__name__)

COMPRESSED_SUFFIX = ".zst"
ENCRYPTED_SUFFIX = ".enc"

MAGIC = b"LHSS1"
FRAME_SIZE = 1024 * 1024
_SALT_BYTES = nacl.pwhash.argon2id.SALTBYTES
_HEADER_BYTES = sodium.crypto_secretstream_xchacha20poly1305_HEADERBYTES
_KEY_BYTES = sodium.crypto_secretstream_xchacha20poly1305_KEYBYTES
_ABYTES = sodium.crypto_secretstream_xchacha20poly1305_ABYTES
_TAG_MESSAGE = sodium.crypto_secretstream_xchacha20poly1305_TAG_MESSAGE
_TAG_FINAL = sodium.crypto_secretstream_xchacha20poly1305_TAG_FINAL


class CodecError(LonghaulError):
    """A chunk could not be compressed, decompressed or decrypted."""


class MissingChunkFile(CodecError):
    """The input file of a transform does not exist."""


class WrongSecretOrCorrupt(CodecError):
    """Authentication failed: wrong secret, or the ciphertext was damaged."""


class EncryptedWithoutSecret(CodecError):
    """An encrypted chunk was found but no secret is configured."""


def is_encrypted_name(name: str | Path) -> bool:
    """Whether a stored chunk name denotes an encrypted chunk."""
    return str(name).endswith(ENCRYPTED_SUFFIX)


def _require(path: Path) -> Path:
    path = Path(path)
    if not path.is_file():
        raise MissingChunkFile(f"Chunk file not found: {path}")
    return path


def _strip_suffix(path: Path, suffix: str) -> Path:
    if not path.name.endswith(suffix):
        raise CodecError(f"{path.name} does not end in {suffix}")
    return path.with_name(path.name[: -len(suffix)])


@contextmanager
def _output_guard(output: Path) -> Iterator[None]:
    """Remove *output* if the body fails, then re-raise."""
    try:
        yield
    except BaseException:
        output.unlink(missing_ok=True)
        raise


def _derive_key(secret: str, salt: bytes) -> bytes:
    return nacl.pwhash.argon2id.kdf(
        _KEY_BYTES,
        secret.encode("utf-8"),
        salt,
        opslimit=nacl.pwhash.argon2id.OPSLIMIT_INTERACTIVE,
        memlimit=nacl.pwhash.argon2id.MEMLIMIT_INTERACTIVE,
    )


# ----------------------------------------------------------------------
# Compression
# ----------------------------------------------------------------------


def compress(path: Path, level: int = 3) -> Path:
    """Compress *path* to ``path.zst`` and delete *path*."""
    source = _require(path)
    output = source.with_name(source.name + COMPRESSED_SUFFIX)
    with _output_guard(output):
        with open(source, "rb") as fin, open(output, "wb") as fout:
            zstd.ZstdCompressor(level=level).copy_stream(fin, fout)
    source.unlink()
    logger.debug("Compressed %s -> %s", source.name, output.name)
    return output


def decompress(path: Path) -> Path:
    """Decompress ``name.zst`` to ``name`` and delete the input."""
    source = _require(path)
    output = _strip_suffix(source, COMPRESSED_SUFFIX)
    with _output_guard(output):
        try:
            with open(source, "rb") as fin, open(output, "wb") as fout:
                zstd.ZstdDecompressor().copy_stream(fin, fout)
        except zstd.ZstdError as exc:
            raise CodecError(f"Corrupt compressed chunk {source.name}: {exc}") from exc
    source.unlink()
    logger.debug("Decompressed %s -> %s", source.name, output.name)
    return output


# ----------------------------------------------------------------------
# Encryption
# ----------------------------------------------------------------------


def encrypt(path: Path, secret: str) -> Path:
    """Encrypt *path* to ``path.enc`` under *secret* and delete *path*."""
    if not secret:
        raise CodecError("encrypt() requires a non-empty secret")
    source = _require(path)
    output = source.with_name(source.name + ENCRYPTED_SUFFIX)
    salt = nacl.utils.random(_SALT_BYTES)
    key = _derive_key(secret, salt)
    state = sodium.crypto_secretstream_xchacha20poly1305_state()
    header = sodium.crypto_secretstream_xchacha20poly1305_init_push(state, key)

    with _output_guard(output):
        with open(source, "rb") as fin, open(output, "wb") as fout:
            fout.write(MAGIC + salt + header)
            # Read one frame ahead so the last frame can be tagged final.
            block = fin.read(FRAME_SIZE)
            while True:
                following = fin.read(FRAME_SIZE)
                tag = _TAG_MESSAGE if following else _TAG_FINAL
                fout.write(
                    sodium.crypto_secretstream_xchacha20poly1305_push(
                        state, block, tag=tag
                    )
                )
                if not following:
                    break
                block = following
    source.unlink()
    logger.debug("Encrypted %s -> %s", source.name, output.name)
    return output


def decrypt(path: Path, secret: str) -> Path:
    """Decrypt ``name.enc`` to ``name`` and delete the input.

    Raises ``WrongSecretOrCorrupt`` rather than ever writing plaintext that
    failed authentication.
    """
    source = _require(path)
    output = _strip_suffix(source, ENCRYPTED_SUFFIX)
    if not secret:
        raise EncryptedWithoutSecret(f"{source.name} is encrypted but no secret is set")

    with _output_guard(output):
        with open(source, "rb") as fin, open(output, "wb") as fout:
            preamble = fin.read(len(MAGIC) + _SALT_BYTES + _HEADER_BYTES)
            if len(preamble) < len(MAGIC) + _SALT_BYTES + _HEADER_BYTES or not (
                preamble.startswith(MAGIC)
            ):
                raise WrongSecretOrCorrupt(f"{source.name} is not a longhaul encrypted chunk")
            salt = preamble[len(MAGIC) : len(MAGIC) + _SALT_BYTES]
            header = preamble[len(MAGIC) + _SALT_BYTES :]
            key = _derive_key(secret, salt)
            state = sodium.crypto_secretstream_xchacha20poly1305_state()
            try:
                sodium.crypto_secretstream_xchacha20poly1305_init_pull(state, header, key)
                while True:
                    frame = fin.read(FRAME_SIZE + _ABYTES)
                    if not frame:
                        raise WrongSecretOrCorrupt(f"{source.name} is truncated")
                    plain, tag = sodium.crypto_secretstream_xchacha20poly1305_pull(
                        state, frame
                    )
                    fout.write(plain)
                    if tag == _TAG_FINAL:
                        break
            except nacl.exceptions.CryptoError as exc:
                raise WrongSecretOrCorrupt(
                    f"Could not decrypt {source.name}: wrong secret or corrupt data"
                ) from exc
            if fin.read(1):
                raise WrongSecretOrCorrupt(f"{source.name} has data after the final frame")
    source.unlink()
    logger.debug("Decrypted %s -> %s", source.name, output.name)
    return output


# ----------------------------------------------------------------------
# Chunk pipelines
# ----------------------------------------------------------------------


def encode_chunk(path: Path, *, level: int = 3, secret: str | None = None) -> Path:
    """Write-path pipeline: compress, then encrypt when a secret is set."""
    encoded = compress(path, level)
    if secret:
        encoded = encrypt(encoded, secret)
    return encoded


def decode_chunk(path: Path, *, secret: str | None = None) -> Path:
    """Read-path pipeline: decrypt if the name says so, then decompress."""
    decoded = _require(path)
    if is_encrypted_name(decoded):
        if not secret:
            raise EncryptedWithoutSecret(
                f"{decoded.name} is encrypted but no archive secret is configured"
            )
        decoded = decrypt(decoded, secret)
    if decoded.name.endswith(COMPRESSED_SUFFIX):
        decoded = decompress(decoded)
    return decoded
