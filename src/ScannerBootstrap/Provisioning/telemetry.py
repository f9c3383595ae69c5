"""Telemetry keys and the write-once key/value sink used during a run.

Resolution branches record a small, fixed vocabulary of ``(key, value)``
pairs so behaviour can be observed without reading the business logic.  A key
keeps the first value written during a run; later writes are ignored and
logged at debug level.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Protocol

__all__ = [
    "TelemetryKeys",
    "TelemetryValues",
    "TelemetrySink",
    "Telemetry",
]

logger = logging.getLogger(__name__)


class TelemetryKeys:
    ENGINE_PROVISIONING = "provisioning.engine.enabled"
    ENGINE_DOWNLOAD = "provisioning.engine.download"
    RESOURCES_CACHE_HITS = "provisioning.resources.cache_hits"
    RESOURCES_DOWNLOADED = "provisioning.resources.downloaded"
    RESOURCES_FAILED = "provisioning.resources.failed"
    JRE_PROVISIONING = "provisioning.jre.enabled"
    JRE_DOWNLOAD = "provisioning.jre.download"


class TelemetryValues:
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNSUPPORTED = "unsupported"
    UNSUPPORTED_NO_OS = "unsupported_no_os"
    UNSUPPORTED_NO_ARCH = "unsupported_no_arch"
    USER_SUPPLIED = "user_supplied"
    CACHE_HIT = "cache_hit"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


class TelemetrySink(Protocol):
    def add(self, key: str, value: str) -> None:
        ...


class Telemetry:
    """In-memory, write-once telemetry sink."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}

    def add(self, key: str, value: str) -> None:
        """Record ``value`` under ``key`` unless the key already has a value.

        Args:
            key: One of the :class:`TelemetryKeys` names.
            value: Value to record, stored as ``str``.

        Examples:
            >>> sink = Telemetry()
            >>> sink.add(TelemetryKeys.ENGINE_DOWNLOAD, TelemetryValues.FAILED)
            >>> sink.add(TelemetryKeys.ENGINE_DOWNLOAD, TelemetryValues.DOWNLOADED)
            >>> sink.get(TelemetryKeys.ENGINE_DOWNLOAD)
            'failed'
        """

        if key in self._values:
            logger.debug(
                "telemetry key %s already set to %s; ignoring %s",
                key,
                self._values[key],
                value,
                extra={"stage": "telemetry"},
            )
            return
        self._values[key] = str(value)

    def get(self, key: str) -> Optional[str]:
        """Return the value recorded for ``key``, or ``None``."""

        return self._values.get(key)

    def snapshot(self) -> Dict[str, str]:
        """Return a copy of every recorded pair."""

        return dict(self._values)

    def write_json(self, path: Path) -> Path:
        """Persist the collected pairs as a JSON object, replacing ``path`` atomically."""

        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(self._values, handle, indent=2, sort_keys=True)
        tmp.replace(target)
        return target
