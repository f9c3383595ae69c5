# === NAVMAP v1 ===
# {
#   "module": "ScannerBootstrap.Provisioning.archive_cache",
#   "purpose": "Cache archives such as Java runtimes as verified files plus extracted trees",
#   "sections": [
#     {"id": "lookup", "name": "Extracted Lookup", "anchor": "LKP", "kind": "api"},
#     {"id": "download", "name": "Download & Extract", "anchor": "DLX", "kind": "api"},
#     {"id": "promote", "name": "Directory Promotion", "anchor": "PRM", "kind": "helpers"}
#   ]
# }
# === /NAVMAP ===

"""Extracted-archive cache built on top of :class:`~.cache.FileCache`.

An archive described by :class:`~ScannerBootstrap.Provisioning.models.ArchiveDescriptor`
is stored twice under its content-addressed entry directory::

    <cache_root>/<sha256>/<filename>              verified archive
    <cache_root>/<sha256>/<filename>_extracted/   extracted tree

The extracted tree is usable when it contains the descriptor's entry point.
Extraction happens in a private staging directory beside the final one and is
renamed into place only after the entry point has been found, so a reader
never observes a half-extracted tree.  When two processes race, the first
complete tree wins and the loser discards its staging copy.

The archive format is checked before anything is downloaded; an archive whose
file already sits verified in the cache is extracted without a new download.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from .cache import FileCache
from .checksums import ChecksumProvider, Sha256ChecksumProvider
from .downloader import CachedDownloader, DownloadFunction
from .errors import ArchiveFormatError, UnsafeArchiveEntryError, UnsupportedOutcomeError
from .filesystem import FileSystem, LocalFileSystem
from .models import (
    ArchiveDescriptor,
    CacheError,
    CacheHit,
    CacheMiss,
    CacheResult,
    DownloadError,
    DownloadSuccess,
    FileDescriptor,
)
from .unpacking import Unpacker, unpacker_for

__all__ = ["ArchiveCache"]

_EXTRACTED_SUFFIX = "_extracted"


class ArchiveCache:
    """Look up, download, and extract archives whose contents are used in place."""

    def __init__(
        self,
        file_cache: FileCache,
        *,
        checksum: Optional[ChecksumProvider] = None,
        fs: Optional[FileSystem] = None,
        logger: Optional[logging.Logger] = None,
        downloader_factory: Optional[Callable[[Path, FileDescriptor], CachedDownloader]] = None,
    ) -> None:
        self.file_cache = file_cache
        self.checksum = checksum or Sha256ChecksumProvider()
        self.fs = fs or LocalFileSystem()
        self.logger = logger or logging.getLogger(__name__)
        self._downloader_factory = downloader_factory or self._default_downloader

    def extraction_dir(self, cache_root: Path, descriptor: ArchiveDescriptor) -> Path:
        """Return ``<cache_root>/<sha256>/<filename>_extracted``."""

        entry_dir = self.file_cache.entry_dir(cache_root, descriptor.to_file_descriptor())
        return entry_dir / f"{descriptor.filename}{_EXTRACTED_SUFFIX}"

    # --- lookup -----------------------------------------------------------

    def is_archive_cached(self, cache_root: Path, descriptor: ArchiveDescriptor) -> CacheResult:
        """Classify the extracted tree for ``descriptor``.

        Args:
            cache_root: Root of the shared artifact cache; created if missing.
            descriptor: Archive whose extracted tree is looked up.

        Returns:
            ``CacheHit`` with the resolved entry point, ``CacheMiss`` when no
            tree was extracted yet, or ``CacheError`` when the cache root is
            unusable or the tree lacks its entry point.
        """

        root = Path(cache_root)
        extracted = self.extraction_dir(root, descriptor)
        entry_point = extracted / descriptor.entry_point
        try:
            self.fs.mkdir(root, parents=True)
            if not self.fs.is_dir(extracted):
                self.logger.debug(
                    "archive cache miss for %s",
                    descriptor.filename,
                    extra={"stage": "cache", "path": str(extracted)},
                )
                return CacheMiss()
            has_entry_point = self.fs.is_file(entry_point)
        except OSError as exc:
            return CacheError(f"Cache directory {root} is not usable: {exc}")

        if not has_entry_point:
            self.logger.debug(
                "extracted archive %s lacks %s",
                extracted,
                descriptor.entry_point,
                extra={"stage": "cache"},
            )
            return CacheError(
                f"Extracted archive {extracted} does not contain {descriptor.entry_point}"
            )
        resolved = str(entry_point.resolve())
        self.logger.debug(
            "archive cache hit for %s",
            descriptor.filename,
            extra={"stage": "cache", "path": resolved},
        )
        return CacheHit(resolved)

    # --- download and extract -----------------------------------------------

    async def download_and_extract(
        self,
        cache_root: Path,
        descriptor: ArchiveDescriptor,
        download_fn: DownloadFunction,
    ) -> CacheResult:
        """Make the extracted tree for ``descriptor`` available.

        Args:
            cache_root: Root of the shared artifact cache.
            descriptor: Archive to provision.
            download_fn: Zero-argument callable streaming the archive bytes;
                not called when a verified archive is already cached.

        Returns:
            ``CacheHit`` with the resolved entry point, or ``CacheError`` when
            the format is unsupported, the download fails, or extraction does
            not produce the entry point.
        """

        unpacker = unpacker_for(descriptor.filename, fs=self.fs, logger=self.logger)
        if unpacker is None:
            return CacheError(f"Archive format of {descriptor.filename} is not supported")

        root = Path(cache_root)
        archive = await self._ensure_archive(root, descriptor.to_file_descriptor(), download_fn)
        match archive:
            case CacheHit(file_path=file_path):
                return await asyncio.to_thread(
                    self._extract, root, descriptor, unpacker, Path(file_path)
                )
            case CacheError():
                return archive
            case _:
                raise UnsupportedOutcomeError(archive)

    async def _ensure_archive(
        self, root: Path, file_descriptor: FileDescriptor, download_fn: DownloadFunction
    ) -> CacheResult:
        cached = self.file_cache.is_file_cached(root, file_descriptor)
        match cached:
            case CacheHit():
                self.logger.debug(
                    "archive %s already downloaded",
                    file_descriptor.filename,
                    extra={"stage": "cache", "path": cached.file_path},
                )
                return cached
            case CacheError():
                return cached
            case CacheMiss():
                downloader = self._downloader_factory(root, file_descriptor)
                result = await downloader.download_file(download_fn)
            case _:
                raise UnsupportedOutcomeError(cached)

        match result:
            case DownloadSuccess(file_path=file_path):
                return CacheHit(file_path)
            case DownloadError(message=message):
                return CacheError(message)
            case _:
                raise UnsupportedOutcomeError(result)

    def _extract(
        self, root: Path, descriptor: ArchiveDescriptor, unpacker: Unpacker, archive_path: Path
    ) -> CacheResult:
        final = self.extraction_dir(root, descriptor)
        staging: Optional[Path] = None
        try:
            staging = self.fs.make_temp_dir(final.parent, prefix=f".{final.name}.")
            self.logger.debug(
                "extracting %s into %s", archive_path, staging, extra={"stage": "extract"}
            )
            with self.fs.open_read(archive_path) as stream:
                unpacker.unpack(stream, staging)
            if not self.fs.is_file(staging / descriptor.entry_point):
                self.logger.warning(
                    "archive %s does not contain %s",
                    descriptor.filename,
                    descriptor.entry_point,
                    extra={"stage": "extract"},
                )
                return CacheError(
                    f"Archive {descriptor.filename} does not contain {descriptor.entry_point}"
                )
            self._promote(staging, final, descriptor)
        except (UnsafeArchiveEntryError, ArchiveFormatError, OSError) as exc:
            self.logger.warning(
                "extraction of %s failed: %s",
                descriptor.filename,
                exc,
                extra={"stage": "extract", "error_type": type(exc).__name__},
            )
            return CacheError(f"Archive {descriptor.filename} could not be extracted: {exc}")
        finally:
            if staging is not None:
                self._discard(staging)

        resolved = str((final / descriptor.entry_point).resolve())
        self.logger.debug(
            "extracted %s", descriptor.filename, extra={"stage": "extract", "path": resolved}
        )
        return CacheHit(resolved)

    # --- promotion --------------------------------------------------------

    def _promote(self, staging: Path, final: Path, descriptor: ArchiveDescriptor) -> None:
        if self.fs.is_dir(final):
            if self.fs.is_file(final / descriptor.entry_point):
                self.logger.debug(
                    "extracted tree %s already present, discarding %s",
                    final,
                    staging,
                    extra={"stage": "extract"},
                )
                return
            self.fs.remove_tree(final)
        try:
            self.fs.replace(staging, final)
        except OSError:
            if self.fs.is_file(final / descriptor.entry_point):
                self.logger.debug(
                    "extracted tree %s was promoted concurrently", final, extra={"stage": "extract"}
                )
                return
            raise

    def _discard(self, staging: Path) -> None:
        try:
            self.fs.remove_tree(staging)
        except OSError as exc:
            self.logger.debug(
                "unable to remove staging directory %s: %s",
                staging,
                exc,
                extra={"stage": "extract"},
            )

    def _default_downloader(self, root: Path, descriptor: FileDescriptor) -> CachedDownloader:
        return CachedDownloader(
            self.file_cache,
            descriptor,
            root,
            checksum=self.checksum,
            fs=self.fs,
            logger=self.logger,
        )
