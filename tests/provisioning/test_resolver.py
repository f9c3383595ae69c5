"""Decision-tree tests for ``EngineResolver``.

Each branch is driven through :class:`FakeServerClient` so the number of
metadata fetches and downloads can be asserted alongside the returned path
and the recorded telemetry.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from ScannerBootstrap.Provisioning.cache import FileCache
from ScannerBootstrap.Provisioning.errors import UnsupportedOutcomeError
from ScannerBootstrap.Provisioning.models import EngineMetadata
from ScannerBootstrap.Provisioning.resolver import MAX_RESOLUTION_ATTEMPTS, EngineResolver
from ScannerBootstrap.Provisioning.telemetry import Telemetry, TelemetryKeys, TelemetryValues
from ScannerBootstrap.Provisioning.testing import FakeServerClient
from tests.provisioning._helpers import ENGINE_BYTES, seed_cache, sha256_of


def _resolver(server, file_cache, cache_root, telemetry, logger, **kwargs) -> EngineResolver:
    return EngineResolver(
        server, file_cache, cache_root=cache_root, telemetry=telemetry, logger=logger, **kwargs
    )


def _download_status(telemetry: Telemetry):
    return telemetry.get(TelemetryKeys.ENGINE_DOWNLOAD)


# ============================================================================
# SHORT CIRCUITS
# ============================================================================


def test_local_override_is_returned_without_contacting_server(
    file_cache, cache_root, telemetry, logger
):
    server = FakeServerClient(supports_provisioning=False)
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    result = asyncio.run(resolver.resolve("local/path/to/engine.jar"))

    assert result == "local/path/to/engine.jar"
    assert server.metadata_calls == 0
    assert server.download_calls == []
    assert telemetry.snapshot() == {
        TelemetryKeys.ENGINE_PROVISIONING: TelemetryValues.ENABLED,
        TelemetryKeys.ENGINE_DOWNLOAD: TelemetryValues.USER_SUPPLIED,
    }


def test_unsupported_server_yields_none(file_cache, cache_root, telemetry, logger, engine_metadata):
    server = FakeServerClient(supports_provisioning=False, metadata=engine_metadata)
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    assert asyncio.run(resolver.resolve()) is None
    assert server.metadata_calls == 0
    assert telemetry.snapshot() == {
        TelemetryKeys.ENGINE_PROVISIONING: TelemetryValues.UNSUPPORTED,
    }


def test_empty_override_falls_through_to_provisioning(
    file_cache, cache_root, telemetry, logger, engine_metadata
):
    server = FakeServerClient(supports_provisioning=False, metadata=engine_metadata)
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    assert asyncio.run(resolver.resolve("")) is None
    assert telemetry.get(TelemetryKeys.ENGINE_PROVISIONING) == TelemetryValues.UNSUPPORTED


def test_missing_metadata_yields_none(file_cache, cache_root, telemetry, logger):
    server = FakeServerClient(metadata=None)
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    assert asyncio.run(resolver.resolve()) is None
    assert server.metadata_calls == 1
    assert server.download_calls == []
    assert telemetry.get(TelemetryKeys.ENGINE_PROVISIONING) == TelemetryValues.ENABLED
    assert _download_status(telemetry) is None


# ============================================================================
# CACHE AND DOWNLOAD
# ============================================================================


def test_cache_hit_skips_download(
    file_cache, cache_root, telemetry, logger, engine_metadata, engine_descriptor
):
    seeded = seed_cache(cache_root, engine_descriptor, ENGINE_BYTES)
    server = FakeServerClient(metadata=engine_metadata, payloads=[b"never used"])
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    result = asyncio.run(resolver.resolve())

    assert result == str(seeded.resolve())
    assert server.download_calls == []
    assert _download_status(telemetry) == TelemetryValues.CACHE_HIT


def test_cache_miss_downloads_then_next_run_hits(
    file_cache, cache_root, logger, engine_metadata, engine_descriptor
):
    server = FakeServerClient(metadata=engine_metadata, payloads=[ENGINE_BYTES])
    first_telemetry = Telemetry()

    first = asyncio.run(
        _resolver(server, file_cache, cache_root, first_telemetry, logger).resolve()
    )

    expected = (cache_root / engine_descriptor.sha256 / "engine.jar").resolve()
    assert first == str(expected)
    assert len(server.download_calls) == 1
    assert _download_status(first_telemetry) == TelemetryValues.DOWNLOADED

    second_telemetry = Telemetry()
    second = asyncio.run(
        _resolver(server, file_cache, cache_root, second_telemetry, logger).resolve()
    )

    assert second == first
    assert len(server.download_calls) == 1
    assert _download_status(second_telemetry) == TelemetryValues.CACHE_HIT


def test_cache_error_is_not_retried(
    file_cache, cache_root, telemetry, logger, engine_metadata, engine_descriptor
):
    seed_cache(cache_root, engine_descriptor, b"tampered")
    server = FakeServerClient(metadata=engine_metadata, payloads=[ENGINE_BYTES])
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    assert asyncio.run(resolver.resolve()) is None
    assert server.metadata_calls == 1
    assert server.download_calls == []
    assert _download_status(telemetry) == TelemetryValues.FAILED


# ============================================================================
# RETRY
# ============================================================================


def test_failed_download_is_retried_once_with_fresh_metadata(
    file_cache, cache_root, telemetry, logger, engine_metadata
):
    server = FakeServerClient(metadata=engine_metadata, payloads=[b"corrupt", ENGINE_BYTES])
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    result = asyncio.run(resolver.resolve())

    assert result is not None
    assert server.metadata_calls == 2
    assert len(server.download_calls) == 2
    assert _download_status(telemetry) == TelemetryValues.DOWNLOADED


def test_retry_uses_metadata_from_second_fetch(file_cache, cache_root, telemetry, logger):
    stale = EngineMetadata("engine-old.jar", sha256_of(b"old engine"))
    fresh = EngineMetadata("engine-new.jar", sha256_of(ENGINE_BYTES))
    server = FakeServerClient(metadata_sequence=[stale, fresh], payloads=[ENGINE_BYTES])
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    result = asyncio.run(resolver.resolve())

    assert result is not None and result.endswith("engine-new.jar")
    assert server.download_calls == [stale, fresh]


def test_two_failed_downloads_yield_none(
    file_cache, cache_root, telemetry, logger, engine_metadata
):
    server = FakeServerClient(metadata=engine_metadata, payloads=[b"corrupt"])
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    assert asyncio.run(resolver.resolve()) is None
    assert server.metadata_calls == MAX_RESOLUTION_ATTEMPTS
    assert len(server.download_calls) == MAX_RESOLUTION_ATTEMPTS
    assert _download_status(telemetry) == TelemetryValues.FAILED
    assert not any((cache_root / engine_metadata.sha256).iterdir())


def test_server_errors_during_download_are_retried(
    file_cache, cache_root, telemetry, logger, engine_metadata
):
    server = FakeServerClient(metadata=engine_metadata)
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    assert asyncio.run(resolver.resolve()) is None
    assert len(server.download_calls) == 2
    assert _download_status(telemetry) == TelemetryValues.FAILED


def test_metadata_disappearing_on_retry_records_failure(
    file_cache, cache_root, telemetry, logger, engine_metadata
):
    server = FakeServerClient(metadata_sequence=[engine_metadata, None], payloads=[b"corrupt"])
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    assert asyncio.run(resolver.resolve()) is None
    assert server.metadata_calls == 2
    assert len(server.download_calls) == 1
    assert _download_status(telemetry) == TelemetryValues.FAILED


def test_concurrent_resolutions_share_one_cache_entry(
    file_cache, cache_root, logger, engine_metadata, engine_descriptor
):
    async def _run_two():
        first = FakeServerClient(metadata=engine_metadata, payloads=[ENGINE_BYTES])
        second = FakeServerClient(metadata=engine_metadata, payloads=[ENGINE_BYTES])
        return await asyncio.gather(
            _resolver(first, file_cache, cache_root, Telemetry(), logger).resolve(),
            _resolver(second, file_cache, cache_root, Telemetry(), logger).resolve(),
        )

    first_path, second_path = asyncio.run(_run_two())

    assert first_path == second_path
    entry_dir = cache_root / engine_descriptor.sha256
    assert sorted(p.name for p in entry_dir.iterdir()) == ["engine.jar"]


# ============================================================================
# PROPAGATION
# ============================================================================


def test_unexpected_download_exception_propagates(
    file_cache, cache_root, telemetry, logger, engine_metadata
):
    server = FakeServerClient(metadata=engine_metadata, payloads=[ValueError("bug in stream")])
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    with pytest.raises(ValueError, match="bug in stream"):
        asyncio.run(resolver.resolve())
    assert server.metadata_calls == 1


def test_metadata_transport_error_propagates(file_cache, cache_root, telemetry, logger):
    class _Unreachable(FakeServerClient):
        async def fetch_engine_metadata(self):
            self.metadata_calls += 1
            raise httpx.ConnectError("connection refused")

    server = _Unreachable()
    resolver = _resolver(server, file_cache, cache_root, telemetry, logger)

    with pytest.raises(httpx.ConnectError):
        asyncio.run(resolver.resolve())
    assert server.metadata_calls == 1


def test_unknown_cache_outcome_raises(cache_root, telemetry, logger, engine_metadata):
    class _BogusCache(FileCache):
        def is_file_cached(self, cache_root, descriptor):
            return "not a cache result"

    server = FakeServerClient(metadata=engine_metadata)
    resolver = _resolver(server, _BogusCache(), cache_root, telemetry, logger)

    with pytest.raises(UnsupportedOutcomeError) as excinfo:
        asyncio.run(resolver.resolve())
    assert excinfo.value.outcome == "not a cache result"


def test_unknown_download_outcome_raises(
    file_cache, cache_root, telemetry, logger, engine_metadata
):
    class _BogusDownloader:
        async def download_file(self, download_fn):
            return object()

    server = FakeServerClient(metadata=engine_metadata)
    resolver = _resolver(
        server,
        file_cache,
        cache_root,
        telemetry,
        logger,
        downloader_factory=lambda descriptor: _BogusDownloader(),
    )

    with pytest.raises(UnsupportedOutcomeError):
        asyncio.run(resolver.resolve())
