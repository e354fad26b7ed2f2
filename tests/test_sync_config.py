from __future__ import annotations

import json
import uuid
from pathlib import Path

from flow_sync.config import DEFAULT_SYNC_SERVER_URL
from flow_sync.sync_config import (
    DEFAULT_SYNC_INTERVAL_MS,
    create_default_sync_config,
    get_sync_config_path,
    is_sync_enabled,
    load_sync_config,
    save_sync_config,
)


def _write(vault: Path, body: str) -> None:
    path = get_sync_config_path(vault)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")


def _valid() -> dict[str, object]:
    return {
        "enabled": True,
        "serverUrl": "https://sync.example.com",
        "deviceId": "dev-1",
        "enabledAt": 1_700_000_000_000,
        "lastSyncSequence": 0,
        "syncIntervalMs": 30_000,
    }


def test_missing_config_is_disabled(tmp_path: Path) -> None:
    result = load_sync_config(tmp_path)
    assert result.status == "disabled"
    assert result.reason == "missing"
    assert is_sync_enabled(tmp_path) is False


def test_empty_object_and_non_true_enabled_are_disabled(tmp_path: Path) -> None:
    _write(tmp_path, "{}")
    assert load_sync_config(tmp_path).reason == "disabled"

    for value in (False, "true", 1, None):
        _write(tmp_path, json.dumps({**_valid(), "enabled": value}))
        result = load_sync_config(tmp_path)
        assert result.status == "disabled"
        assert result.reason == "disabled"


def test_malformed_configs(tmp_path: Path) -> None:
    for body in ("", "not json", "[1, 2]", '"text"'):
        _write(tmp_path, body)
        assert load_sync_config(tmp_path).reason == "malformed", body

    missing_field = _valid()
    del missing_field["deviceId"]
    _write(tmp_path, json.dumps(missing_field))
    assert load_sync_config(tmp_path).reason == "malformed"

    _write(tmp_path, json.dumps({**_valid(), "syncIntervalMs": 1000}))
    assert load_sync_config(tmp_path).reason == "malformed"

    _write(tmp_path, json.dumps({**_valid(), "syncIntervalMs": 3_600_001}))
    assert load_sync_config(tmp_path).reason == "malformed"


def test_valid_config_loads(tmp_path: Path) -> None:
    _write(tmp_path, json.dumps(_valid()))

    result = load_sync_config(tmp_path)

    assert result.status == "enabled"
    assert result.reason is None
    assert result.config is not None
    assert result.config.device_id == "dev-1"
    assert result.config.sync_interval_ms == 30_000
    assert is_sync_enabled(tmp_path) is True


def test_save_creates_directory_and_writes_camel_case_json(tmp_path: Path) -> None:
    config = create_default_sync_config()

    path = save_sync_config(tmp_path / "vault", config)

    assert path == tmp_path / "vault" / ".scribe" / "sync.json"
    text = path.read_text(encoding="utf-8")
    assert text.endswith("}\n")
    data = json.loads(text)
    assert data["enabled"] is True
    assert data["deviceId"] == config.device_id
    assert data["serverUrl"] == DEFAULT_SYNC_SERVER_URL
    assert load_sync_config(tmp_path / "vault").config == config


def test_create_default_sync_config() -> None:
    a = create_default_sync_config()
    b = create_default_sync_config(enabled=False)

    assert a.enabled is True
    assert b.enabled is False
    assert a.device_id != b.device_id
    uuid.UUID(a.device_id)
    assert a.sync_interval_ms == DEFAULT_SYNC_INTERVAL_MS
    assert a.last_sync_sequence == 0
    assert a.enabled_at > 0
