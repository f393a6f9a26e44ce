"""Settings for the DM funnel engine, read from the environment and an optional .env.

Timing thresholds (polling intervals, escalation ceilings, nudge offsets) are
product-tuned defaults and can be overridden per deployment.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root detection
PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = PROJECT_ROOT / ".env"

DATABASE_FILE = PROJECT_ROOT / "dm_funnel.db"
ABSOLUTE_DATABASE_URL = f"sqlite:///{DATABASE_FILE.as_posix()}"


def _resolve_database_url(url: str) -> str:
    """Anchor relative SQLite files at PROJECT_ROOT so the CLI, API and scheduler share one file."""
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return url

    path = url[len(prefix):]
    if path == ":memory:" or path.startswith("/") or ":" in path:
        return url
    return prefix + (PROJECT_ROOT / path.removeprefix("./")).as_posix()


def _parse_minutes(value: str) -> List[int]:
    """Parse a "10,60,720" nudge schedule into minutes."""
    return [int(p.strip()) for p in value.split(",") if p.strip()]


class Settings(BaseSettings):
    """
    Engine settings. Environment variables override .env, which overrides defaults.

    DRY_RUN defaults to True so that nothing is sent to real users by accident.
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    database_url: str = Field(
        default=ABSOLUTE_DATABASE_URL,
        alias="DATABASE_URL",
        description="SQLAlchemy connection string.",
    )
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE", ge=1)
    db_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW", ge=0)
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT", ge=1)

    # -------------------------------------------------------------------------
    # Messaging provider (direct messages)
    # -------------------------------------------------------------------------
    dm_api_base_url: str = Field(default="https://api.example.com/v1", alias="DM_API_BASE_URL")
    dm_api_key: Optional[str] = Field(default=None, alias="DM_API_KEY")
    dm_agent_user_id: Optional[str] = Field(
        default=None,
        alias="DM_AGENT_USER_ID",
        description="User id of the bot account; its own messages are never treated as replies.",
    )
    dm_api_timeout_seconds: int = Field(default=15, alias="DM_API_TIMEOUT_SECONDS", ge=1)
    dm_send_max_retries: int = Field(default=3, alias="DM_SEND_MAX_RETRIES", ge=1)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------
    poll_initial_interval_seconds: float = Field(
        default=5.0, alias="POLL_INITIAL_INTERVAL_SECONDS", gt=0
    )
    poll_regular_interval_seconds: float = Field(
        default=10.0, alias="POLL_REGULAR_INTERVAL_SECONDS", gt=0
    )
    poll_initial_window_seconds: float = Field(
        default=60.0,
        alias="POLL_INITIAL_WINDOW_SECONDS",
        ge=0,
        description="How long after phase entry the short polling interval is used.",
    )
    poll_max_consecutive_failures: int = Field(
        default=5, alias="POLL_MAX_CONSECUTIVE_FAILURES", ge=1
    )
    poll_max_conflict_retries: int = Field(default=3, alias="POLL_MAX_CONFLICT_RETRIES", ge=1)

    # -------------------------------------------------------------------------
    # Escalation & timeouts
    # -------------------------------------------------------------------------
    max_invalid_responses: int = Field(default=3, alias="MAX_INVALID_RESPONSES", ge=1)
    conversation_timeout_hours: float = Field(
        default=24.0, alias="CONVERSATION_TIMEOUT_HOURS", gt=0
    )
    timeout_sweep_interval_minutes: int = Field(
        default=60, alias="TIMEOUT_SWEEP_INTERVAL_MINUTES", ge=1
    )
    nudge_schedule_phase1: str = Field(
        default="10,60,720",
        alias="NUDGE_SCHEDULE_PHASE1",
        description="Comma-separated minutes after phase entry.",
    )
    nudge_schedule_phase2: str = Field(default="15,60,720", alias="NUDGE_SCHEDULE_PHASE2")
    nudge_sweep_interval_minutes: int = Field(
        default=1, alias="NUDGE_SWEEP_INTERVAL_MINUTES", ge=1
    )

    # -------------------------------------------------------------------------
    # Handoff
    # -------------------------------------------------------------------------
    app_base_url: str = Field(default="http://localhost:3000", alias="APP_BASE_URL")
    handoff_funnel_id: Optional[int] = Field(
        default=None,
        alias="HANDOFF_FUNNEL_ID",
        description="Funnel bound to internal conversations. Falls back to the origin funnel.",
    )

    # -------------------------------------------------------------------------
    # Operator notifications
    # -------------------------------------------------------------------------
    slack_webhook_url: Optional[str] = Field(default=None, alias="SLACK_WEBHOOK_URL")
    twilio_account_sid: Optional[str] = Field(default=None, alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: Optional[str] = Field(default=None, alias="TWILIO_AUTH_TOKEN")
    twilio_from_number: Optional[str] = Field(default=None, alias="TWILIO_FROM_NUMBER")
    alert_phone_number: Optional[str] = Field(default=None, alias="ALERT_PHONE_NUMBER")
    alert_timeout_seconds: int = Field(default=10, alias="ALERT_TIMEOUT_SECONDS", ge=1)

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    dry_run: bool = Field(default=True, alias="DRY_RUN")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")  # "text" or "json"
    environment: str = Field(default="local", alias="ENVIRONMENT")
    api_port: int = Field(default=8000, alias="API_PORT", ge=1)
    restore_on_startup: bool = Field(default=True, alias="RESTORE_ON_STARTUP")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Ensure log format is valid."""
        lower = v.lower()
        if lower not in {"text", "json"}:
            raise ValueError("log_format must be 'text' or 'json'")
        return lower

    @field_validator("nudge_schedule_phase1", "nudge_schedule_phase2")
    @classmethod
    def validate_nudge_schedule(cls, v: str) -> str:
        """Nudge offsets are positive whole minutes."""
        try:
            minutes = _parse_minutes(v)
        except ValueError as exc:
            raise ValueError(f"invalid nudge schedule: {v!r}") from exc
        if any(m <= 0 for m in minutes):
            raise ValueError("nudge offsets must be positive minutes")
        return ",".join(str(m) for m in sorted(set(minutes)))

    @model_validator(mode="after")
    def validate_provider_config(self) -> "Settings":
        """Require provider credentials when sending for real in production."""
        if not self.dry_run and self.environment == "production":
            if not self.dm_api_key:
                raise ValueError("DM_API_KEY required in production mode")
        return self

    @model_validator(mode="after")
    def validate_poll_intervals(self) -> "Settings":
        """The short interval must not be longer than the regular one."""
        if self.poll_initial_interval_seconds > self.poll_regular_interval_seconds:
            raise ValueError(
                "POLL_INITIAL_INTERVAL_SECONDS cannot exceed POLL_REGULAR_INTERVAL_SECONDS"
            )
        return self

    @model_validator(mode="after")
    def resolve_database_url(self) -> "Settings":
        self.database_url = _resolve_database_url(self.database_url)
        return self

    # -------------------------------------------------------------------------
    # Channel detection
    # -------------------------------------------------------------------------

    def is_provider_configured(self) -> bool:
        return bool(self.dm_api_key)

    def is_slack_enabled(self) -> bool:
        return bool(self.slack_webhook_url)

    def is_twilio_enabled(self) -> bool:
        """SMS alerts need Twilio credentials and somewhere to send them."""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_from_number
            and self.alert_phone_number
        )

    def nudge_offsets(self, phase: str) -> List[int]:
        """Nudge offsets in minutes for "PHASE1" or "PHASE2"; empty for other phases."""
        if phase == "PHASE1":
            return _parse_minutes(self.nudge_schedule_phase1)
        if phase == "PHASE2":
            return _parse_minutes(self.nudge_schedule_phase2)
        return []

    def get_enabled_services(self) -> list[str]:
        """Names of the outside services this deployment talks to."""
        services = []
        if self.is_provider_configured():
            services.append("dm_provider")
        if self.is_slack_enabled():
            services.append("slack")
        if self.is_twilio_enabled():
            services.append("twilio")
        return services


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment again."""
    get_settings.cache_clear()
    return get_settings()
