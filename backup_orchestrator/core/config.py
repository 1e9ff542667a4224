"""Core configuration settings.

Centralized configuration using Pydantic Settings for environment
variable management with sensible defaults.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

LOG_PAYLOAD_MODES = {"tail", "full", "none"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Scheduler and agent timings default to the values the control plane
    has always used; override them per deployment through the environment
    or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # =========================================================================
    # Environment Detection
    # =========================================================================

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        alias="ENVIRONMENT",
    )

    # Application
    app_name: str = "Backup Orchestrator"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/orchestrator.db"

    # Agent log archive root
    data_root: Path = Field(default=Path("./data"))

    # =========================================================================
    # Agents
    # =========================================================================

    heartbeat_ttl_seconds: PositiveInt = 120
    agent_default_port: PositiveInt = 8081
    agent_backup_timeout_seconds: float = 15.0
    agent_filesystem_timeout_seconds: float = 10.0

    # Agent log payload returned with each backup response
    backup_log_payload: str = "tail"
    backup_log_max_bytes: PositiveInt = 131072

    # =========================================================================
    # Scheduler
    # =========================================================================

    scheduler_min_check_interval_seconds: PositiveInt = 10
    scheduler_idle_interval_seconds: PositiveInt = 300  # 5 min
    scheduler_anticipation_seconds: int = 5
    scheduler_timezone: str = "UTC"

    # Retention
    default_retention_slots: PositiveInt = 5

    # Notifications
    notification_enabled: bool = False
    notification_min_severity: str = "warning"  # info, warning, error, critical
    notification_cooldown_minutes: int = 30
    alert_webhook_url: str | None = None

    # CORS
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("environment", mode="before")
    @classmethod
    def detect_environment(cls, v: str | None) -> str:
        """Auto-detect environment from common environment variables."""
        if v:
            return v.lower()

        if os.getenv("PRODUCTION") or os.getenv("PROD"):
            return "production"
        if os.getenv("STAGING"):
            return "staging"

        return "development"

    @field_validator("scheduler_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject timezone names unknown to the IANA database."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown scheduler timezone: {v}") from exc
        return v

    @field_validator("backup_log_payload")
    @classmethod
    def validate_log_payload(cls, v: str) -> str:
        normalized = v.lower().strip()
        if normalized not in LOG_PAYLOAD_MODES:
            raise ValueError(f"backup_log_payload must be one of {sorted(LOG_PAYLOAD_MODES)}")
        return normalized

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        """Parse CORS origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @model_validator(mode="after")
    def validate_runtime_constraints(self):
        """Reject combinations the engine cannot run with."""
        if self.environment == "production" and self.debug:
            logger.error(
                "CRITICAL: DEBUG mode cannot be enabled in production! "
                "Set DEBUG=false or ENVIRONMENT=development"
            )
            raise ValueError("DEBUG cannot be True in production environment")

        if self.agent_backup_timeout_seconds <= 0 or self.agent_filesystem_timeout_seconds <= 0:
            raise ValueError("Agent timeouts must be positive")

        if self.scheduler_anticipation_seconds < 0:
            raise ValueError("scheduler_anticipation_seconds cannot be negative")

        if self.scheduler_idle_interval_seconds < self.scheduler_min_check_interval_seconds:
            raise ValueError(
                "scheduler_idle_interval_seconds must be >= scheduler_min_check_interval_seconds"
            )

        return self

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def timezone(self) -> ZoneInfo:
        """Timezone used to interpret wall-clock schedule times."""
        return ZoneInfo(self.scheduler_timezone)

    @property
    def logs_root(self) -> Path:
        """Directory where agent logs are archived."""
        return self.data_root / "logs"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
