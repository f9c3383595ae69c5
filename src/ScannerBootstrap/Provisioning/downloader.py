"""Single-attempt download, verification, and cache commit for one artifact.

:class:`CachedDownloader` owns exactly one attempt: it streams bytes from a
caller-supplied download function into a temporary file inside the cache,
verifies the SHA-256 digest, and commits the file atomically.  Blocking file
writes and hashing run in worker threads so the event loop keeps serving
other transfers.  Retrying is left to the engine resolver because a failed
attempt may be caused by stale metadata that a blind repeat would not fix.

Transport (:mod:`httpx`), server, and filesystem failures become
:class:`~ScannerBootstrap.Provisioning.models.DownloadError` values.
Cancellation and programming errors propagate.  Whatever happens, the
temporary file is removed unless it was committed, so a partially written
artifact never appears at its canonical cache path.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import httpx

from .cache import FileCache
from .checksums import ChecksumProvider, Sha256ChecksumProvider, digests_match
from .errors import ServerError
from .filesystem import FileSystem, LocalFileSystem
from .models import CacheHit, DownloadError, DownloadResult, DownloadSuccess, FileDescriptor

__all__ = ["CachedDownloader", "DownloadFunction"]

DownloadFunction = Callable[[], AsyncIterator[bytes]]


class CachedDownloader:
    """Download one artifact into the cache and verify it before committing."""

    def __init__(
        self,
        file_cache: FileCache,
        descriptor: FileDescriptor,
        cache_root: Path,
        *,
        checksum: Optional[ChecksumProvider] = None,
        fs: Optional[FileSystem] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.file_cache = file_cache
        self.descriptor = descriptor
        self.cache_root = Path(cache_root)
        self.checksum = checksum or Sha256ChecksumProvider()
        self.fs = fs or LocalFileSystem()
        self.logger = logger or logging.getLogger(__name__)

    async def download_file(self, download_fn: DownloadFunction) -> DownloadResult:
        """Fetch the artifact with ``download_fn`` and commit it when valid.

        When the attempt fails, the cache entry is checked once more: another
        process may have committed a valid copy in the meantime, and that copy
        is returned as a success.

        Args:
            download_fn: Zero-argument callable returning an async iterator of
                content chunks, typically bound to an HTTP GET.

        Returns:
            ``DownloadSuccess`` with the committed cache path, or
            ``DownloadError`` describing the failed attempt.
        """

        result = await self._attempt(download_fn)
        if isinstance(result, DownloadError):
            cached = self.file_cache.is_file_cached(self.cache_root, self.descriptor)
            if isinstance(cached, CacheHit):
                self.logger.debug(
                    "%s found in cache after failed download",
                    self.descriptor.filename,
                    extra={"stage": "download", "path": cached.file_path},
                )
                return DownloadSuccess(cached.file_path)
        return result

    async def _attempt(self, download_fn: DownloadFunction) -> DownloadResult:
        temp_path: Optional[Path] = None
        committed = False
        try:
            temp_path = self.file_cache.create_temp_file(self.cache_root, self.descriptor)
            self.logger.debug(
                "downloading %s to %s",
                self.descriptor.filename,
                temp_path,
                extra={"stage": "download"},
            )
            written = 0
            with self.fs.open_write(temp_path) as target:
                async for chunk in download_fn():
                    await asyncio.to_thread(target.write, chunk)
                    written += len(chunk)

            actual = await asyncio.to_thread(self._digest, temp_path)
            if not digests_match(self.descriptor.sha256, actual):
                self.logger.warning(
                    "checksum mismatch for downloaded %s: expected %s, got %s",
                    self.descriptor.filename,
                    self.descriptor.sha256,
                    actual,
                    extra={"stage": "download", "bytes": written},
                )
                return DownloadError(
                    f"Checksum mismatch for {self.descriptor.filename}: "
                    f"expected {self.descriptor.sha256}, got {actual}"
                )

            final_path = self.file_cache.commit(self.cache_root, self.descriptor, temp_path)
            committed = True
            self.logger.debug(
                "downloaded %s (%d bytes)",
                self.descriptor.filename,
                written,
                extra={"stage": "download", "path": str(final_path)},
            )
            return DownloadSuccess(str(final_path))
        except (httpx.HTTPError, ServerError, OSError) as exc:
            self.logger.debug(
                "download of %s failed: %s",
                self.descriptor.filename,
                exc,
                extra={"stage": "download", "error_type": type(exc).__name__},
            )
            return DownloadError(f"Download of {self.descriptor.filename} failed: {exc}")
        finally:
            if temp_path is not None and not committed:
                self.fs.unlink(temp_path, missing_ok=True)

    def _digest(self, path: Path) -> str:
        with self.fs.open_read(path) as stream:
            return self.checksum.compute(stream)
