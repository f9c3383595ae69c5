"""Payload and cache seeding helpers shared by provisioning tests."""

from __future__ import annotations

import hashlib
from pathlib import Path

from ScannerBootstrap.Provisioning.models import FileDescriptor

ENGINE_BYTES = b"PK\x03\x04 fake engine jar contents"


def sha256_of(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def seed_cache(cache_root: Path, descriptor: FileDescriptor, payload: bytes) -> Path:
    """Write ``payload`` where the cache expects ``descriptor``."""

    path = cache_root / descriptor.sha256 / descriptor.filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)
    return path
