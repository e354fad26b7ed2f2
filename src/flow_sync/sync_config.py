from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from flow_sync.config import DEFAULT_SYNC_SERVER_URL
from flow_sync.sync_utils import now_ms

logger = logging.getLogger(__name__)

SYNC_CONFIG_DIR = ".scribe"
SYNC_CONFIG_FILE = "sync.json"

DEFAULT_SYNC_INTERVAL_MS = 30_000
MIN_SYNC_INTERVAL_MS = 5_000
MAX_SYNC_INTERVAL_MS = 3_600_000


class SyncConfig(BaseModel):
    """Per-vault sync settings, stored as camelCase JSON in `.scribe/sync.json`."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool
    server_url: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    enabled_at: int
    last_sync_sequence: int = Field(ge=0)
    sync_interval_ms: int = Field(ge=MIN_SYNC_INTERVAL_MS, le=MAX_SYNC_INTERVAL_MS)


DisabledReason = Literal["missing", "disabled", "malformed"]


@dataclass(frozen=True)
class SyncConfigLoadResult:
    status: Literal["enabled", "disabled"]
    config: SyncConfig | None = None
    reason: DisabledReason | None = None


def get_sync_config_path(vault_path: str | Path) -> Path:
    return Path(vault_path) / SYNC_CONFIG_DIR / SYNC_CONFIG_FILE


def load_sync_config(vault_path: str | Path) -> SyncConfigLoadResult:
    path = get_sync_config_path(vault_path)
    try:
        raw = path.read_text(encoding="utf-8")
    except (FileNotFoundError, NotADirectoryError):
        return SyncConfigLoadResult(status="disabled", reason="missing")

    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("sync config is not valid JSON path=%s", path)
        return SyncConfigLoadResult(status="disabled", reason="malformed")

    if not isinstance(data, dict):
        return SyncConfigLoadResult(status="disabled", reason="malformed")

    # Anything but a literal `true` keeps sync off, including `{}`.
    if data.get("enabled") is not True:
        return SyncConfigLoadResult(status="disabled", reason="disabled")

    try:
        config = SyncConfig.model_validate(data)
    except ValidationError as e:
        logger.warning("sync config is incomplete path=%s errors=%s", path, e.error_count())
        return SyncConfigLoadResult(status="disabled", reason="malformed")

    return SyncConfigLoadResult(status="enabled", config=config)


def is_sync_enabled(vault_path: str | Path) -> bool:
    return load_sync_config(vault_path).status == "enabled"


def save_sync_config(vault_path: str | Path, config: SyncConfig) -> Path:
    path = get_sync_config_path(vault_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    body = json.dumps(config.model_dump(mode="json", by_alias=True), indent=2)
    path.write_text(body + "\n", encoding="utf-8")
    return path


def create_default_sync_config(
    *, enabled: bool = True, server_url: str = DEFAULT_SYNC_SERVER_URL
) -> SyncConfig:
    return SyncConfig(
        enabled=enabled,
        server_url=server_url,
        device_id=str(uuid.uuid4()),
        enabled_at=now_ms(),
        last_sync_sequence=0,
        sync_interval_ms=DEFAULT_SYNC_INTERVAL_MS,
    )
