"""Configuration management for the clinicflow engine."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_REPO_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_CONFIG_PATH = _REPO_ROOT / "config" / "clinicflow.yml"
_USER_CONFIG_PATHS = [
    Path("~/.config/clinicflow/clinicflow.yml").expanduser(),
    Path("/config/clinicflow.yml"),
]
_USER_SECRETS_PATHS = [
    Path("~/.config/clinicflow/secrets.yml").expanduser(),
    Path("/config/secrets.yml"),
]


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping from disk, returning an empty mapping if missing."""
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def _yaml_settings_source(paths: list[Path]):
    """Create a Pydantic settings source for a list of YAML paths."""

    def source() -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for path in paths:
            merged.update(_load_yaml(path))
        return merged

    return source


def _set_nested_value(target: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted-path value on a nested mapping, creating containers."""
    parts = path.split(".")
    cursor = target
    for key in parts[:-1]:
        node = cursor.get(key)
        if not isinstance(node, dict):
            node = {}
            cursor[key] = node
        cursor = node
    cursor[parts[-1]] = value


def _parse_env_value(raw: str, kind: str) -> Any:
    """Parse an environment value into the requested primitive type."""
    if kind == "int":
        return int(raw)
    if kind == "bool":
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if kind == "json":
        return json.loads(raw)
    return raw


def _env_settings_source():
    """Create a settings source that maps environment variables to config keys."""
    mapping = {
        "DATABASE_URL": ("database.url", "str"),
        "CLINICFLOW_ENV": ("environment", "str"),
        "LOG_LEVEL": ("log_level", "str"),
        "LOG_JSON": ("log_json", "bool"),
        "CRON_SECRET": ("cron.secret", "str"),
        "CRON_ALLOW_UNAUTHENTICATED_IN_DEV": ("cron.allow_unauthenticated_in_dev", "bool"),
        "CHANNEL_GATEWAY_URL": ("channels.gateway_url", "str"),
        "CHANNEL_GATEWAY_TOKEN": ("channels.gateway_token", "str"),
        "SEND_TIMEOUT_SECONDS": ("delivery.send_timeout_seconds", "int"),
        "CLAIM_LEASE_SECONDS": ("delivery.claim_lease_seconds", "int"),
        "CELERY_BROKER_URL": ("celery.broker_url", "str"),
        "CELERY_RESULT_BACKEND": ("celery.result_backend", "str"),
        "REMINDER_SEQUENCE": ("reminders.sequence", "json"),
    }

    def source() -> dict[str, Any]:
        data: dict[str, Any] = {}
        for env_key, (path, kind) in mapping.items():
            raw = os.environ.get(env_key)
            if raw is None:
                continue
            _set_nested_value(data, path, _parse_env_value(raw, kind))
        return data

    return source


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    url: str = "sqlite:///clinicflow.db"
    pool_pre_ping: bool = True


class DeliveryConfig(BaseModel):
    """Retry, backoff and claim settings shared by the dispatcher and reminder processor."""

    max_retries: int = 3
    backoff_base_seconds: int = 60
    backoff_multiplier: int = 4
    claim_lease_seconds: int = 300
    send_timeout_seconds: int = 5
    message_batch_size: int = 100
    retry_batch_size: int = 50
    max_workers: int = 1

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, value: int) -> int:
        """Ensure the retry cap is non-negative."""
        if value < 0:
            raise ValueError("delivery.max_retries must be >= 0.")
        return value

    @field_validator("backoff_base_seconds", "claim_lease_seconds")
    @classmethod
    def validate_non_negative_seconds(cls, value: int) -> int:
        """Ensure durations are non-negative."""
        if value < 0:
            raise ValueError("delivery durations must be >= 0.")
        return value

    @field_validator("backoff_multiplier")
    @classmethod
    def validate_backoff_multiplier(cls, value: int) -> int:
        """Ensure delays never shrink between retries."""
        if value < 1:
            raise ValueError("delivery.backoff_multiplier must be >= 1.")
        return value

    @field_validator("send_timeout_seconds", "message_batch_size", "retry_batch_size", "max_workers")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure sizing and timeout values are positive."""
        if value < 1:
            raise ValueError("delivery sizing values must be >= 1.")
        return value


class ReminderTimingConfig(BaseModel):
    """One entry of the default reminder sequence."""

    hours_before: int
    channel: str
    reminder_type: str

    @field_validator("hours_before")
    @classmethod
    def validate_hours_before(cls, value: int) -> int:
        """Ensure reminders are scheduled before the appointment."""
        if value < 0:
            raise ValueError("reminders.sequence[].hours_before must be >= 0.")
        return value


def _default_sequence() -> list[ReminderTimingConfig]:
    return [
        ReminderTimingConfig(hours_before=48, channel="EMAIL", reminder_type="STANDARD"),
        ReminderTimingConfig(hours_before=24, channel="SMS", reminder_type="CONFIRMATION"),
        ReminderTimingConfig(hours_before=2, channel="SMS", reminder_type="FINAL"),
    ]


class ReminderConfig(BaseModel):
    """Reminder processing defaults."""

    batch_size: int = 100
    retry_batch_size: int = 50
    skip_final_when_confirmed: bool = True
    sequence: list[ReminderTimingConfig] = Field(default_factory=_default_sequence)

    @field_validator("batch_size", "retry_batch_size")
    @classmethod
    def validate_batch_size(cls, value: int) -> int:
        """Ensure batch sizes are positive."""
        if value < 1:
            raise ValueError("reminders batch sizes must be >= 1.")
        return value


class CronConfig(BaseModel):
    """Shared-secret settings for externally triggered batch endpoints."""

    secret: str | None = None
    header_name: str = "x-cron-secret"
    allow_unauthenticated_in_dev: bool = True


class ChannelConfig(BaseModel):
    """Outbound gateway settings for the HTTP relay channel sender."""

    gateway_url: str | None = None
    gateway_token: str | None = None


class CeleryConfig(BaseModel):
    """Celery broker and beat settings."""

    broker_url: str = "redis://redis:6379/1"
    result_backend: str = "redis://redis:6379/2"
    queue_name: str = "clinicflow"
    scan_interval_seconds: float = 60.0

    @field_validator("scan_interval_seconds")
    @classmethod
    def validate_scan_interval(cls, value: float) -> float:
        """Ensure the beat interval is positive."""
        if value <= 0:
            raise ValueError("celery.scan_interval_seconds must be > 0.")
        return value


class Settings(BaseSettings):
    """Application settings loaded from environment variables and YAML files."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Layer settings sources in descending order of precedence."""
        return (
            init_settings,
            _env_settings_source(),
            _yaml_settings_source(_USER_SECRETS_PATHS),
            _yaml_settings_source(_USER_CONFIG_PATHS),
            _yaml_settings_source([_DEFAULT_CONFIG_PATH]),
        )

    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    reminders: ReminderConfig = Field(default_factory=ReminderConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    channels: ChannelConfig = Field(default_factory=ChannelConfig)
    celery: CeleryConfig = Field(default_factory=CeleryConfig)

    @property
    def is_development(self) -> bool:
        """Return whether the permissive development mode is active."""
        return self.environment.strip().lower() in {"development", "dev", "local", "test"}

    @model_validator(mode="after")
    def validate_cron_secret(self) -> "Settings":
        """Require a cron secret outside development mode."""
        if self.is_development or self.cron.secret:
            return self
        raise ValueError("cron.secret must be configured outside development mode.")


# Global settings instance
settings = Settings()
