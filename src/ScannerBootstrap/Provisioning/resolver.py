# === NAVMAP v1 ===
# {
#   "module": "ScannerBootstrap.Provisioning.resolver",
#   "purpose": "Decide how the engine and Java runtime are obtained: override, cache, download",
#   "sections": [
#     {"id": "attempts", "name": "Attempt Outcomes", "anchor": "ATT", "kind": "helpers"},
#     {"id": "resolver", "name": "EngineResolver", "anchor": "RES", "kind": "api"},
#     {"id": "jre", "name": "JreResolver", "anchor": "JRE", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Engine and Java runtime resolution policy.

:meth:`EngineResolver.resolve` walks a linear decision tree:

1. a caller-supplied local engine path is returned verbatim;
2. servers that cannot provision the engine yield ``None``;
3. engine metadata is fetched; no metadata yields ``None``;
4. the file cache is consulted; a miss triggers one cached download;
5. a failed download is retried exactly once, starting again from fresh
   metadata.  Cache-layer errors are not retried.

``None`` means "no engine available" and is never an exception.  Exceptions
raised by collaborators propagate unchanged.  Each branch logs at debug level
and records telemetry under
:attr:`~ScannerBootstrap.Provisioning.telemetry.TelemetryKeys.ENGINE_PROVISIONING`
and :attr:`~ScannerBootstrap.Provisioning.telemetry.TelemetryKeys.ENGINE_DOWNLOAD`.

:class:`JreResolver` applies the same policy to the Java runtime, whose
provisioned form is an archive extracted next to its cached file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_none

from .archive_cache import ArchiveCache
from .cache import FileCache
from .checksums import ChecksumProvider, Sha256ChecksumProvider
from .downloader import CachedDownloader
from .errors import UnsupportedOutcomeError
from .filesystem import FileSystem, LocalFileSystem
from .models import (
    CacheError,
    CacheHit,
    CacheMiss,
    DownloadError,
    DownloadSuccess,
    EngineMetadata,
    FileDescriptor,
    JreMetadata,
)
from .server import ServerClient
from .telemetry import Telemetry, TelemetryKeys, TelemetrySink, TelemetryValues

__all__ = ["EngineResolver", "JreResolver", "MAX_RESOLUTION_ATTEMPTS"]

MAX_RESOLUTION_ATTEMPTS = 2


@dataclass(frozen=True)
class _Resolved:
    path: str
    status: str


@dataclass(frozen=True)
class _DownloadFailed:
    message: str


@dataclass(frozen=True)
class _Abandoned:
    reason: str
    status: Optional[str]


_Attempt = Union[_Resolved, _DownloadFailed, _Abandoned]


def _is_download_failure(outcome: _Attempt) -> bool:
    return isinstance(outcome, _DownloadFailed)


def _last_outcome(retry_state: RetryCallState) -> _Attempt:
    assert retry_state.outcome is not None
    return retry_state.outcome.result()


async def _retry_download_failures(
    attempt: Callable[[], Awaitable[_Attempt]],
    before_sleep: Callable[[RetryCallState], None],
) -> _Attempt:
    retrying = AsyncRetrying(
        stop=stop_after_attempt(MAX_RESOLUTION_ATTEMPTS),
        wait=wait_none(),
        retry=retry_if_result(_is_download_failure),
        before_sleep=before_sleep,
        retry_error_callback=_last_outcome,
    )
    return await retrying(attempt)


class EngineResolver:
    """Resolve a local path to the analysis engine JAR."""

    def __init__(
        self,
        server: ServerClient,
        file_cache: FileCache,
        *,
        cache_root: Path,
        telemetry: Optional[TelemetrySink] = None,
        checksum: Optional[ChecksumProvider] = None,
        fs: Optional[FileSystem] = None,
        logger: Optional[logging.Logger] = None,
        downloader_factory: Optional[Callable[[FileDescriptor], CachedDownloader]] = None,
    ) -> None:
        self.server = server
        self.file_cache = file_cache
        self.cache_root = Path(cache_root)
        self.telemetry = telemetry if telemetry is not None else Telemetry()
        self.checksum = checksum or Sha256ChecksumProvider()
        self.fs = fs or LocalFileSystem()
        self.logger = logger or logging.getLogger(__name__)
        self._downloader_factory = downloader_factory or self._default_downloader

    async def resolve(self, local_engine_path: Optional[str] = None) -> Optional[str]:
        """Return a local engine path, or ``None`` when no engine is available.

        Args:
            local_engine_path: User-supplied engine JAR.  When non-empty it is
                returned verbatim and the server is never consulted.

        Returns:
            The override, the verified cache entry, or ``None``.
        """

        if local_engine_path:
            self.logger.debug(
                "using local engine %s", local_engine_path, extra={"stage": "resolve"}
            )
            self.telemetry.add(TelemetryKeys.ENGINE_PROVISIONING, TelemetryValues.ENABLED)
            self.telemetry.add(TelemetryKeys.ENGINE_DOWNLOAD, TelemetryValues.USER_SUPPLIED)
            return local_engine_path

        if not self.server.supports_provisioning:
            self.logger.debug(
                "server does not support engine provisioning", extra={"stage": "resolve"}
            )
            self.telemetry.add(TelemetryKeys.ENGINE_PROVISIONING, TelemetryValues.UNSUPPORTED)
            return None

        self.telemetry.add(TelemetryKeys.ENGINE_PROVISIONING, TelemetryValues.ENABLED)

        attempts = 0

        async def attempt() -> _Attempt:
            nonlocal attempts
            attempts += 1
            metadata = await self.server.fetch_engine_metadata()
            if metadata is None:
                return _Abandoned(
                    "server returned no engine metadata",
                    TelemetryValues.FAILED if attempts > 1 else None,
                )
            return await self._resolve_once(metadata)

        outcome = await _retry_download_failures(attempt, self._log_retry)

        match outcome:
            case _Resolved(path=path, status=status):
                self.telemetry.add(TelemetryKeys.ENGINE_DOWNLOAD, status)
                self.logger.debug("resolved engine %s", path, extra={"stage": "resolve"})
                return path
            case _DownloadFailed(message=message):
                self.telemetry.add(TelemetryKeys.ENGINE_DOWNLOAD, TelemetryValues.FAILED)
                self.logger.debug(
                    "engine download failed after %d attempts: %s",
                    attempts,
                    message,
                    extra={"stage": "resolve"},
                )
                return None
            case _Abandoned(reason=reason, status=status):
                if status is not None:
                    self.telemetry.add(TelemetryKeys.ENGINE_DOWNLOAD, status)
                self.logger.debug(
                    "engine resolution stopped: %s", reason, extra={"stage": "resolve"}
                )
                return None
            case _:
                raise UnsupportedOutcomeError(outcome)

    async def _resolve_once(self, metadata: EngineMetadata) -> _Attempt:
        descriptor = metadata.to_descriptor()
        cache_result = self.file_cache.is_file_cached(self.cache_root, descriptor)
        match cache_result:
            case CacheHit(file_path=file_path):
                self.logger.debug("engine cache hit %s", file_path, extra={"stage": "resolve"})
                return _Resolved(file_path, TelemetryValues.CACHE_HIT)
            case CacheMiss():
                self.logger.debug(
                    "engine cache miss, downloading %s",
                    metadata.filename,
                    extra={"stage": "resolve", "direct_url": bool(metadata.download_url)},
                )
                downloader = self._downloader_factory(descriptor)
                download_result = await downloader.download_file(
                    lambda: self.server.download_engine(metadata)
                )
                return self._from_download(download_result)
            case CacheError(message=message):
                self.logger.debug(
                    "engine cache error: %s", message, extra={"stage": "resolve"}
                )
                return _Abandoned(message, TelemetryValues.FAILED)
            case _:
                raise UnsupportedOutcomeError(cache_result)

    def _from_download(self, result: object) -> _Attempt:
        match result:
            case DownloadSuccess(file_path=file_path):
                return _Resolved(file_path, TelemetryValues.DOWNLOADED)
            case DownloadError(message=message):
                return _DownloadFailed(message)
            case _:
                raise UnsupportedOutcomeError(result)

    def _default_downloader(self, descriptor: FileDescriptor) -> CachedDownloader:
        return CachedDownloader(
            self.file_cache,
            descriptor,
            self.cache_root,
            checksum=self.checksum,
            fs=self.fs,
            logger=self.logger,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        self.logger.debug(
            "engine resolution attempt %d failed, retrying once",
            retry_state.attempt_number,
            extra={"stage": "resolve"},
        )


class JreResolver:
    """Resolve a local path to a Java executable, provisioning a JRE when needed.

    The decision tree mirrors :class:`EngineResolver` with three differences: a
    user-supplied executable or an explicit opt-out disables provisioning, the
    operating system and architecture must be known, and missing metadata is
    retried like a failed download.  Provisioned runtimes are archives, so the
    cache lookups go through :class:`~.archive_cache.ArchiveCache`.
    """

    def __init__(
        self,
        server: ServerClient,
        archive_cache: ArchiveCache,
        *,
        cache_root: Path,
        telemetry: Optional[TelemetrySink] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.server = server
        self.archive_cache = archive_cache
        self.cache_root = Path(cache_root)
        self.telemetry = telemetry if telemetry is not None else Telemetry()
        self.logger = logger or logging.getLogger(__name__)

    async def resolve(
        self,
        java_exe_path: Optional[str] = None,
        *,
        os_name: Optional[str],
        arch: Optional[str],
        skip_provisioning: bool = False,
    ) -> Optional[str]:
        """Return the path of a Java executable, or ``None`` when none is available.

        Args:
            java_exe_path: User-supplied executable; returned verbatim when set.
            os_name: Operating system the runtime must target.
            arch: CPU architecture the runtime must target.
            skip_provisioning: Disable provisioning entirely.

        Returns:
            A local path, or ``None``.  Server and metadata errors propagate.
        """

        if java_exe_path:
            self.logger.debug("using local java %s", java_exe_path, extra={"stage": "jre"})
            self.telemetry.add(TelemetryKeys.JRE_PROVISIONING, TelemetryValues.DISABLED)
            self.telemetry.add(TelemetryKeys.JRE_DOWNLOAD, TelemetryValues.USER_SUPPLIED)
            return java_exe_path
        if skip_provisioning:
            return self._skip("JRE provisioning is disabled", TelemetryValues.DISABLED)
        if not os_name:
            return self._skip("operating system is unknown", TelemetryValues.UNSUPPORTED_NO_OS)
        if not arch:
            return self._skip("architecture is unknown", TelemetryValues.UNSUPPORTED_NO_ARCH)
        if not self.server.supports_provisioning:
            return self._skip(
                "server does not support JRE provisioning", TelemetryValues.UNSUPPORTED
            )

        self.telemetry.add(TelemetryKeys.JRE_PROVISIONING, TelemetryValues.ENABLED)

        async def attempt() -> _Attempt:
            metadata = await self.server.fetch_jre_metadata(os_name, arch)
            if metadata is None:
                return _DownloadFailed(f"server returned no JRE metadata for {os_name}/{arch}")
            return await self._resolve_once(metadata)

        outcome = await _retry_download_failures(attempt, self._log_retry)

        match outcome:
            case _Resolved(path=path, status=status):
                self.telemetry.add(TelemetryKeys.JRE_DOWNLOAD, status)
                self.logger.debug("resolved java %s", path, extra={"stage": "jre"})
                return path
            case _DownloadFailed(message=message):
                self.telemetry.add(TelemetryKeys.JRE_DOWNLOAD, TelemetryValues.FAILED)
                self.logger.debug("JRE provisioning failed: %s", message, extra={"stage": "jre"})
                return None
            case _Abandoned(reason=reason, status=status):
                if status is not None:
                    self.telemetry.add(TelemetryKeys.JRE_DOWNLOAD, status)
                self.logger.debug("JRE resolution stopped: %s", reason, extra={"stage": "jre"})
                return None
            case _:
                raise UnsupportedOutcomeError(outcome)

    async def _resolve_once(self, metadata: JreMetadata) -> _Attempt:
        descriptor = metadata.to_descriptor()
        cached = self.archive_cache.is_archive_cached(self.cache_root, descriptor)
        match cached:
            case CacheHit(file_path=file_path):
                self.logger.debug("JRE cache hit %s", file_path, extra={"stage": "jre"})
                return _Resolved(file_path, TelemetryValues.CACHE_HIT)
            case CacheMiss():
                self.logger.debug(
                    "JRE cache miss, downloading %s", metadata.filename, extra={"stage": "jre"}
                )
                result = await self.archive_cache.download_and_extract(
                    self.cache_root, descriptor, lambda: self.server.download_jre(metadata)
                )
            case CacheError(message=message):
                self.logger.debug("JRE cache is invalid: %s", message, extra={"stage": "jre"})
                return _Abandoned(message, TelemetryValues.FAILED)
            case _:
                raise UnsupportedOutcomeError(cached)

        match result:
            case CacheHit(file_path=file_path):
                return _Resolved(file_path, TelemetryValues.DOWNLOADED)
            case CacheError(message=message):
                return _DownloadFailed(message)
            case _:
                raise UnsupportedOutcomeError(result)

    def _skip(self, reason: str, status: str) -> None:
        self.logger.debug("skipping JRE provisioning: %s", reason, extra={"stage": "jre"})
        self.telemetry.add(TelemetryKeys.JRE_PROVISIONING, status)
        return None

    def _log_retry(self, retry_state: RetryCallState) -> None:
        self.logger.debug(
            "JRE resolution attempt %d failed, retrying once",
            retry_state.attempt_number,
            extra={"stage": "jre"},
        )
