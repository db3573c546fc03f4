"""Apps monitor configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application settings loaded from environment variables with MONITOR_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="MONITOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: PlatformEnv = PlatformEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.apps_monitor/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Monitored platform
    altinn_environment: str = "at24"

    # Orchestration
    poll_interval_seconds: float = Field(default=600.0, gt=0.0)
    lookback_days: int = Field(default=90, gt=0)
    safety_margin_seconds: float = Field(default=600.0, ge=0.0)
    service_owners: list[str] = Field(default_factory=list)
    discovery_factory: str | None = None
    telemetry_adapter_factory: str | None = None

    # Slack
    slack_host: str = "https://slack.com"
    slack_access_token: SecretStr | None = None
    slack_channel: str | None = None
    slack_timeout_seconds: float = 10.0
    slack_max_retries: int = Field(default=3, ge=0)
    slack_backoff_base_seconds: float = Field(default=1.0, gt=0.0)

    # Distributed locking
    lock_retry_interval_seconds: float = Field(default=5.0, gt=0.0)
    lock_keepalive_seconds: float = Field(default=60.0, gt=0.0)

    # Alerter
    alerter_batch_size: int = Field(default=500, gt=0)
    alerter_offset_settle_seconds: float = Field(default=3600.0, ge=0.0)

    # Feature switches
    disable_orchestrator: bool = False
    disable_alerter: bool = False
    disable_slack_alerts: bool = False
    disable_seeder: bool = False
    seed_path: Path | None = None

    # Process
    shutdown_grace_seconds: float = 30.0
    structured_logging: bool = False
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    @field_validator("slack_access_token", mode="before")
    @classmethod
    def mask_token_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None or v == "":
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @model_validator(mode="after")
    def _require_slack_when_alerting(self) -> Settings:
        if self.disable_alerter or self.disable_slack_alerts:
            return self
        if self.slack_access_token is None or not self.slack_channel:
            raise ValueError(
                "slack_access_token and slack_channel are required unless "
                "disable_alerter or disable_slack_alerts is set"
            )
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def alerter_interval_seconds(self) -> float:
        return self.poll_interval_seconds / 2


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
