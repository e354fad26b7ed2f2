from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, final

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from flow_sync.integrations.sync_transport import RetryConfig


DEFAULT_SYNC_SERVER_URL = "https://sync.scribe.app"


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Flow Sync"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"
    log_level: str = "INFO"

    # Local change store (queue / sync state / conflicts).
    database_url: str = "sqlite:///./.data/sync.sqlite3"

    sync_server_url: str = DEFAULT_SYNC_SERVER_URL
    sync_api_key: str = ""
    request_timeout_seconds: float = 15.0

    # Transport retry budget. Delay = min(base * multiplier^retry, max).
    sync_max_retries: int = 5
    sync_base_delay_ms: int = 1000
    sync_max_delay_ms: int = 60_000
    sync_backoff_multiplier: float = 2.0

    sync_pull_limit: int = 200
    # Local edits are pushed after this quiet period.
    sync_debounce_seconds: float = 1.0

    # Only used by ConflictResolver.try_auto_resolve.
    conflict_auto_resolve_threshold_ms: int = 5000

    # Validate production settings early to fail fast on unsafe defaults.
    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        if self.environment.strip().lower() != "production":
            return self

        errors: list[str] = []

        if not self.sync_api_key.strip():
            errors.append("SYNC_API_KEY must be set in production")

        server_url = self.sync_server_url.strip().lower()
        if not server_url.startswith("https://"):
            errors.append("SYNC_SERVER_URL must use https in production")

        if self.sync_max_retries < 0:
            errors.append("SYNC_MAX_RETRIES must be >= 0")

        if errors:
            raise ValueError("Invalid production settings: " + "; ".join(errors))
        return self

    def retry_config(self) -> "RetryConfig":
        from flow_sync.integrations.sync_transport import RetryConfig

        return RetryConfig(
            max_retries=self.sync_max_retries,
            base_delay_ms=self.sync_base_delay_ms,
            max_delay_ms=self.sync_max_delay_ms,
            backoff_multiplier=self.sync_backoff_multiplier,
        )

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        if not self.sync_api_key.strip():
            warnings.append("SYNC_API_KEY is empty; requests will be rejected by the server")
        if self.sync_server_url.strip().lower().startswith("http://"):
            warnings.append("SYNC_SERVER_URL is not using https")
        return warnings


settings = Settings()
