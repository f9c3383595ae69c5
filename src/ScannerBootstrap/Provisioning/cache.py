# === NAVMAP v1 ===
# {
#   "module": "ScannerBootstrap.Provisioning.cache",
#   "purpose": "Content-addressed file cache with checksum-verified lookups and atomic commits",
#   "sections": [
#     {"id": "layout", "name": "Cache Layout", "anchor": "LAY", "kind": "helpers"},
#     {"id": "lookup", "name": "Cache Lookup", "anchor": "LKP", "kind": "api"},
#     {"id": "commit", "name": "Atomic Commit", "anchor": "CMT", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Content-addressed cache for provisioned artifacts.

Entries live at ``<cache_root>/<sha256>/<filename>``, so a changed artifact
lands in a new directory instead of overwriting an older one.  The cache root
is shared by every build process of the user; correctness under concurrent
writers relies on two rules:

- downloads are written to a temporary file inside the entry directory and
  only become visible through an atomic :func:`os.replace`;
- when an entry already exists and its checksum is valid, it wins and the new
  temporary file is discarded.

Lookups re-hash existing entries so a corrupted or tampered file is reported
as :class:`~ScannerBootstrap.Provisioning.models.CacheError` rather than
served as a hit.  Entries are never evicted here.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .checksums import ChecksumProvider, Sha256ChecksumProvider, digests_match
from .filesystem import FileSystem, LocalFileSystem
from .models import CacheError, CacheHit, CacheMiss, CacheResult, FileDescriptor

__all__ = ["FileCache"]

_TEMP_SUFFIX = ".tmp"


class FileCache:
    """Look up and commit checksum-verified artifacts under a cache root."""

    def __init__(
        self,
        *,
        checksum: Optional[ChecksumProvider] = None,
        fs: Optional[FileSystem] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.checksum = checksum or Sha256ChecksumProvider()
        self.fs = fs or LocalFileSystem()
        self.logger = logger or logging.getLogger(__name__)

    # --- layout -----------------------------------------------------------

    def entry_dir(self, cache_root: Path, descriptor: FileDescriptor) -> Path:
        """Return the content-addressed directory ``<cache_root>/<sha256>``."""

        return Path(cache_root) / descriptor.sha256

    def entry_path(self, cache_root: Path, descriptor: FileDescriptor) -> Path:
        """Return the canonical location of ``descriptor`` under ``cache_root``.

        Args:
            cache_root: Root of the shared artifact cache.
            descriptor: Artifact whose location is computed; nothing is created.

        Returns:
            ``<cache_root>/<sha256>/<filename>``.

        Examples:
            >>> descriptor = FileDescriptor("engine.jar", "ab" * 32)
            >>> FileCache().entry_path(Path("cache"), descriptor).parent.name == "ab" * 32
            True
        """

        return self.entry_dir(cache_root, descriptor) / descriptor.filename

    def ensure_cache_dir(self, cache_root: Path, descriptor: FileDescriptor) -> Path:
        """Create the entry directory on first use.

        Args:
            cache_root: Root of the shared artifact cache.
            descriptor: Artifact whose entry directory is needed.

        Returns:
            The entry directory, which exists on return.

        Raises:
            OSError: If the directory cannot be created.
        """

        directory = self.entry_dir(cache_root, descriptor)
        self.fs.mkdir(directory, parents=True)
        return directory

    def create_temp_file(self, cache_root: Path, descriptor: FileDescriptor) -> Path:
        """Return a fresh temporary file on the same volume as the final entry."""

        directory = self.ensure_cache_dir(cache_root, descriptor)
        return self.fs.make_temp_file(
            directory, prefix=f".{descriptor.filename}.", suffix=_TEMP_SUFFIX
        )

    # --- lookup -----------------------------------------------------------

    def is_file_cached(self, cache_root: Path, descriptor: FileDescriptor) -> CacheResult:
        """Classify the cache entry for ``descriptor`` as hit, miss, or error."""

        root = Path(cache_root)
        path = self.entry_path(root, descriptor)
        try:
            self.fs.mkdir(root, parents=True)
            if not self.fs.is_file(path):
                self.logger.debug(
                    "cache miss for %s",
                    descriptor.filename,
                    extra={"stage": "cache", "path": str(path)},
                )
                return CacheMiss()
            actual = self._digest(path)
        except OSError as exc:
            self.logger.debug(
                "cache unusable at %s: %s",
                root,
                exc,
                extra={"stage": "cache", "path": str(path)},
            )
            return CacheError(f"Cache directory {root} is not usable: {exc}")

        if not digests_match(descriptor.sha256, actual):
            self.logger.debug(
                "checksum mismatch for cached file %s: expected %s, found %s",
                path,
                descriptor.sha256,
                actual,
                extra={"stage": "cache"},
            )
            return CacheError(
                f"Checksum mismatch for cached file {path}: "
                f"expected {descriptor.sha256}, found {actual}"
            )

        resolved = str(path.resolve())
        self.logger.debug(
            "cache hit for %s", descriptor.filename, extra={"stage": "cache", "path": resolved}
        )
        return CacheHit(resolved)

    # --- commit -----------------------------------------------------------

    def commit(self, cache_root: Path, descriptor: FileDescriptor, temp_path: Path) -> Path:
        """Move a verified ``temp_path`` into its canonical cache location.

        The first checksum-valid entry wins: if another process committed the
        same artifact meanwhile, ``temp_path`` is discarded and the existing
        entry returned.

        Args:
            cache_root: Root of the shared artifact cache.
            descriptor: Artifact the temp file was verified against.
            temp_path: Verified temporary file created by :meth:`create_temp_file`.

        Returns:
            Resolved path of the committed entry.
        """

        destination = self.entry_path(cache_root, descriptor)
        self.fs.mkdir(destination.parent, parents=True)
        if self._is_valid_entry(destination, descriptor):
            self.fs.unlink(temp_path, missing_ok=True)
            self.logger.debug(
                "cache entry already present, discarding %s",
                temp_path,
                extra={"stage": "cache", "path": str(destination)},
            )
            return destination.resolve()

        self.fs.replace(Path(temp_path), destination)
        self.logger.debug(
            "committed %s into cache",
            descriptor.filename,
            extra={"stage": "cache", "path": str(destination)},
        )
        return destination.resolve()

    def _is_valid_entry(self, path: Path, descriptor: FileDescriptor) -> bool:
        if not self.fs.is_file(path):
            return False
        try:
            return digests_match(descriptor.sha256, self._digest(path))
        except OSError as exc:
            self.logger.warning(
                "unable to verify existing cache entry %s: %s", path, exc, extra={"stage": "cache"}
            )
            return False

    def _digest(self, path: Path) -> str:
        with self.fs.open_read(path) as stream:
            return self.checksum.compute(stream)
