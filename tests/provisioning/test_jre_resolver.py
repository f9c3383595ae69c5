"""Decision-tree tests for ``JreResolver`` on top of the extracted-archive cache."""

from __future__ import annotations

import asyncio
import io
import tarfile

import httpx
import pytest

from ScannerBootstrap.Provisioning.archive_cache import ArchiveCache
from ScannerBootstrap.Provisioning.models import JreMetadata
from ScannerBootstrap.Provisioning.resolver import JreResolver
from ScannerBootstrap.Provisioning.telemetry import Telemetry, TelemetryKeys, TelemetryValues
from ScannerBootstrap.Provisioning.testing import FakeServerClient
from tests.provisioning._helpers import seed_cache, sha256_of

JAVA_PATH = "jdk-17/bin/java"


def _tar_gz(entries) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, payload in entries:
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))
    return buffer.getvalue()


JRE_BYTES = _tar_gz([(JAVA_PATH, b"#!java")])
JRE = JreMetadata("jre-17-linux-x64", "jre.tar.gz", sha256_of(JRE_BYTES), JAVA_PATH)


@pytest.fixture
def archive_cache(file_cache, logger) -> ArchiveCache:
    return ArchiveCache(file_cache, logger=logger)


def _resolve(server, archive_cache, cache_root, telemetry, logger, java=None, **kwargs):
    resolver = JreResolver(
        server, archive_cache, cache_root=cache_root, telemetry=telemetry, logger=logger
    )
    kwargs.setdefault("os_name", "linux")
    kwargs.setdefault("arch", "x64")
    return asyncio.run(resolver.resolve(java, **kwargs))


def _java_in_cache(cache_root) -> str:
    extracted = cache_root / JRE.sha256 / "jre.tar.gz_extracted"
    return str((extracted / JAVA_PATH).resolve())


# ============================================================================
# SHORT CIRCUITS
# ============================================================================


def test_user_supplied_java_disables_provisioning(archive_cache, cache_root, telemetry, logger):
    server = FakeServerClient(jre_metadata_sequence=[JRE])

    result = _resolve(server, archive_cache, cache_root, telemetry, logger, "/opt/java")

    assert result == "/opt/java"
    assert server.jre_metadata_calls == []
    assert telemetry.snapshot() == {
        TelemetryKeys.JRE_PROVISIONING: TelemetryValues.DISABLED,
        TelemetryKeys.JRE_DOWNLOAD: TelemetryValues.USER_SUPPLIED,
    }


@pytest.mark.parametrize(
    ("kwargs", "status"),
    [
        ({"skip_provisioning": True}, TelemetryValues.DISABLED),
        ({"os_name": None}, TelemetryValues.UNSUPPORTED_NO_OS),
        ({"arch": ""}, TelemetryValues.UNSUPPORTED_NO_ARCH),
    ],
    ids=["skipped", "no-os", "no-arch"],
)
def test_provisioning_preconditions(kwargs, status, archive_cache, cache_root, telemetry, logger):
    server = FakeServerClient(jre_metadata_sequence=[JRE], jre_payloads=[JRE_BYTES])

    assert _resolve(server, archive_cache, cache_root, telemetry, logger, **kwargs) is None
    assert server.jre_metadata_calls == []
    assert telemetry.snapshot() == {TelemetryKeys.JRE_PROVISIONING: status}


def test_unsupported_server_yields_none(archive_cache, cache_root, telemetry, logger):
    server = FakeServerClient(supports_provisioning=False, jre_metadata_sequence=[JRE])

    assert _resolve(server, archive_cache, cache_root, telemetry, logger) is None
    assert telemetry.get(TelemetryKeys.JRE_PROVISIONING) == TelemetryValues.UNSUPPORTED


# ============================================================================
# CACHE AND DOWNLOAD
# ============================================================================


def test_cache_miss_downloads_and_extracts(archive_cache, cache_root, telemetry, logger):
    server = FakeServerClient(jre_metadata_sequence=[JRE], jre_payloads=[JRE_BYTES])

    result = _resolve(server, archive_cache, cache_root, telemetry, logger)

    assert result == _java_in_cache(cache_root)
    assert server.jre_metadata_calls == [("linux", "x64")]
    assert server.jre_download_calls == [JRE]
    assert telemetry.snapshot() == {
        TelemetryKeys.JRE_PROVISIONING: TelemetryValues.ENABLED,
        TelemetryKeys.JRE_DOWNLOAD: TelemetryValues.DOWNLOADED,
    }


def test_extracted_jre_is_a_cache_hit_next_time(archive_cache, cache_root, telemetry, logger):
    server = FakeServerClient(jre_metadata_sequence=[JRE], jre_payloads=[JRE_BYTES])
    _resolve(server, archive_cache, cache_root, telemetry, logger)

    second = Telemetry()
    result = _resolve(server, archive_cache, cache_root, second, logger)

    assert result == _java_in_cache(cache_root)
    assert len(server.jre_download_calls) == 1
    assert second.get(TelemetryKeys.JRE_DOWNLOAD) == TelemetryValues.CACHE_HIT


def test_cached_archive_is_not_downloaded_again(archive_cache, cache_root, telemetry, logger):
    seed_cache(cache_root, JRE.to_descriptor().to_file_descriptor(), JRE_BYTES)
    server = FakeServerClient(jre_metadata_sequence=[JRE])

    result = _resolve(server, archive_cache, cache_root, telemetry, logger)

    assert result == _java_in_cache(cache_root)
    assert server.jre_download_calls == []
    assert telemetry.get(TelemetryKeys.JRE_DOWNLOAD) == TelemetryValues.DOWNLOADED


def test_invalid_extracted_tree_is_not_retried(archive_cache, cache_root, telemetry, logger):
    (cache_root / JRE.sha256 / "jre.tar.gz_extracted").mkdir(parents=True)
    server = FakeServerClient(jre_metadata_sequence=[JRE], jre_payloads=[JRE_BYTES])

    assert _resolve(server, archive_cache, cache_root, telemetry, logger) is None
    assert len(server.jre_metadata_calls) == 1
    assert server.jre_download_calls == []
    assert telemetry.get(TelemetryKeys.JRE_DOWNLOAD) == TelemetryValues.FAILED


# ============================================================================
# RETRY
# ============================================================================


def test_failed_download_is_retried_once(archive_cache, cache_root, telemetry, logger):
    server = FakeServerClient(
        jre_metadata_sequence=[JRE],
        jre_payloads=[httpx.ReadError("connection reset"), JRE_BYTES],
    )

    result = _resolve(server, archive_cache, cache_root, telemetry, logger)

    assert result == _java_in_cache(cache_root)
    assert len(server.jre_metadata_calls) == 2
    assert len(server.jre_download_calls) == 2
    assert telemetry.get(TelemetryKeys.JRE_DOWNLOAD) == TelemetryValues.DOWNLOADED


def test_missing_metadata_is_retried(archive_cache, cache_root, telemetry, logger):
    server = FakeServerClient(jre_metadata_sequence=[None, JRE], jre_payloads=[JRE_BYTES])

    result = _resolve(server, archive_cache, cache_root, telemetry, logger)

    assert result == _java_in_cache(cache_root)
    assert len(server.jre_metadata_calls) == 2
    assert len(server.jre_download_calls) == 1


def test_persistently_missing_metadata_records_failure(
    archive_cache, cache_root, telemetry, logger
):
    server = FakeServerClient()

    assert _resolve(server, archive_cache, cache_root, telemetry, logger) is None
    assert len(server.jre_metadata_calls) == 2
    assert telemetry.snapshot() == {
        TelemetryKeys.JRE_PROVISIONING: TelemetryValues.ENABLED,
        TelemetryKeys.JRE_DOWNLOAD: TelemetryValues.FAILED,
    }


def test_archive_without_java_fails_after_retry(archive_cache, cache_root, telemetry, logger):
    payload = _tar_gz([("jdk-17/release", b"17")])
    metadata = JreMetadata("jre-17", "jre.tar.gz", sha256_of(payload), JAVA_PATH)
    server = FakeServerClient(jre_metadata_sequence=[metadata], jre_payloads=[payload])

    assert _resolve(server, archive_cache, cache_root, telemetry, logger) is None
    assert len(server.jre_metadata_calls) == 2
    assert telemetry.get(TelemetryKeys.JRE_DOWNLOAD) == TelemetryValues.FAILED
