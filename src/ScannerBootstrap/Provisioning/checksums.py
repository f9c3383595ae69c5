"""Checksum computation and digest normalisation helpers.

The server declares a SHA-256 digest for every artifact it hands out.  This
module normalises those declarations and exposes a streaming provider used by
the file cache (to validate entries before serving them as hits) and by the
cached downloader (to validate freshly downloaded bytes before committing
them).  Digests are computed in fixed-size chunks so engine archives are never
materialised in memory.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import BinaryIO, Protocol

from .errors import ConfigError

__all__ = [
    "ChecksumProvider",
    "Sha256ChecksumProvider",
    "normalize_digest",
    "digests_match",
]

_CHUNK_SIZE = 1 << 20
_SHA256_PATTERN = re.compile(r"[0-9a-f]{64}")


class ChecksumProvider(Protocol):
    """Compute content digests for streams and files."""

    def compute(self, stream: BinaryIO) -> str:
        ...

    def compute_file(self, path: Path) -> str:
        ...


class Sha256ChecksumProvider:
    """Streaming SHA-256 provider returning lowercase hexadecimal digests."""

    def __init__(self, chunk_size: int = _CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    def compute(self, stream: BinaryIO) -> str:
        """Return the SHA-256 digest of the remaining bytes in ``stream``.

        I/O errors raised while reading are propagated to the caller.
        """

        hasher = hashlib.sha256()
        for chunk in iter(lambda: stream.read(self.chunk_size), b""):
            hasher.update(chunk)
        return hasher.hexdigest()

    def compute_file(self, path: Path) -> str:
        """Return the SHA-256 digest of the file at ``path``."""

        with Path(path).open("rb") as stream:
            return self.compute(stream)


def normalize_digest(value: object, *, context: str) -> str:
    """Return ``value`` as a lowercase SHA-256 hex digest or raise ``ConfigError``."""

    if not isinstance(value, str):
        raise ConfigError(f"{context}: checksum value must be a string")
    digest = value.strip().lower()
    if not _SHA256_PATTERN.fullmatch(digest):
        raise ConfigError(f"{context}: checksum value must be a 64 character hexadecimal digest")
    return digest


def digests_match(expected: str, actual: str) -> bool:
    """Compare two hex digests case-insensitively."""

    return expected.strip().lower() == actual.strip().lower()
