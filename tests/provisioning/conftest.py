"""Shared fixtures for the provisioning test suite."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from ScannerBootstrap.Provisioning.cache import FileCache
from ScannerBootstrap.Provisioning.logging_config import LOGGER_NAME
from ScannerBootstrap.Provisioning.models import EngineMetadata, FileDescriptor
from ScannerBootstrap.Provisioning.telemetry import Telemetry
from tests.provisioning._helpers import ENGINE_BYTES, sha256_of


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("tests.provisioning")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    return tmp_path / "home" / "cache"


@pytest.fixture
def file_cache(logger) -> FileCache:
    return FileCache(logger=logger)


@pytest.fixture
def engine_metadata() -> EngineMetadata:
    return EngineMetadata(
        filename="engine.jar",
        sha256=sha256_of(ENGINE_BYTES),
        download_url="https://downloads.example.org/engine.jar",
    )


@pytest.fixture
def engine_descriptor(engine_metadata) -> FileDescriptor:
    return engine_metadata.to_descriptor()


@pytest.fixture
def telemetry() -> Telemetry:
    return Telemetry()


@pytest.fixture
def restore_logger():
    """Drop handlers installed by ``setup_logging`` during a test."""

    package_logger = logging.getLogger(LOGGER_NAME)
    handlers, level = list(package_logger.handlers), package_logger.level
    yield package_logger
    for handler in list(package_logger.handlers):
        if handler not in handlers:
            package_logger.removeHandler(handler)
            handler.close()
    package_logger.setLevel(level)
