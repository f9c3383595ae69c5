"""Write-once telemetry sink."""

from __future__ import annotations

import json

from ScannerBootstrap.Provisioning.telemetry import Telemetry, TelemetryKeys, TelemetryValues


def test_first_value_wins():
    telemetry = Telemetry()

    telemetry.add(TelemetryKeys.ENGINE_DOWNLOAD, TelemetryValues.CACHE_HIT)
    telemetry.add(TelemetryKeys.ENGINE_DOWNLOAD, TelemetryValues.FAILED)

    assert telemetry.get(TelemetryKeys.ENGINE_DOWNLOAD) == TelemetryValues.CACHE_HIT


def test_snapshot_is_a_copy():
    telemetry = Telemetry()
    telemetry.add(TelemetryKeys.ENGINE_PROVISIONING, TelemetryValues.ENABLED)

    snapshot = telemetry.snapshot()
    snapshot["extra"] = "value"

    assert telemetry.get("extra") is None


def test_write_json(tmp_path):
    telemetry = Telemetry()
    telemetry.add(TelemetryKeys.ENGINE_PROVISIONING, TelemetryValues.ENABLED)
    telemetry.add(TelemetryKeys.ENGINE_DOWNLOAD, TelemetryValues.DOWNLOADED)

    target = telemetry.write_json(tmp_path / "out" / "telemetry.json")

    assert json.loads(target.read_text(encoding="utf-8")) == {
        "provisioning.engine.download": "downloaded",
        "provisioning.engine.enabled": "enabled",
    }
    assert not (tmp_path / "out" / "telemetry.json.tmp").exists()
