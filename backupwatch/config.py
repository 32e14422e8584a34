"""Application settings loaded from environment variables."""

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backupwatch.overdue.intervals import parse_duration

_NTFY_TOPIC = re.compile(r"^[-_A-Za-z0-9]{1,64}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ConfigurationError(Exception):
    """Settings are present but unusable (bad topic, bad address, ...)."""


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


# -- Channel configuration -----------------------------------------------------


class PushChannelConfig(BaseModel):
    """ntfy-style push channel."""

    kind: Literal["push"] = "push"
    name: str = "ntfy"
    server_url: str = "https://ntfy.sh"
    topic: str
    access_token: str = ""
    priority: int = Field(default=4, ge=1, le=5)
    tags: list[str] = Field(default_factory=lambda: ["warning", "backup"])

    @field_validator("topic")
    @classmethod
    def _check_topic(cls, value: str) -> str:
        if not _NTFY_TOPIC.match(value):
            msg = f"invalid ntfy topic {value!r}"
            raise ValueError(msg)
        return value

    @field_validator("server_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            msg = f"ntfy server URL must be http(s): {value!r}"
            raise ValueError(msg)
        return value.rstrip("/")


class EmailChannelConfig(BaseModel):
    """SMTP email channel."""

    kind: Literal["email"] = "email"
    name: str = "email"
    host: str
    port: int = Field(default=587, ge=1, le=65535)
    security: Literal["starttls", "ssl", "none"] = "starttls"
    username: str = ""
    password: str = ""
    sender: str
    recipients: list[str] = Field(min_length=1)

    @field_validator("sender")
    @classmethod
    def _check_sender(cls, value: str) -> str:
        if not _EMAIL.match(value):
            msg = f"invalid sender address {value!r}"
            raise ValueError(msg)
        return value

    @field_validator("recipients")
    @classmethod
    def _check_recipients(cls, value: list[str]) -> list[str]:
        for address in value:
            if not _EMAIL.match(address):
                msg = f"invalid recipient address {address!r}"
                raise ValueError(msg)
        return value


ChannelConfig = Annotated[PushChannelConfig | EmailChannelConfig, Field(discriminator="kind")]

_channel_adapter: TypeAdapter[ChannelConfig] = TypeAdapter(ChannelConfig)


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


# -- Settings ------------------------------------------------------------------


class Settings(BaseSettings):
    """backupwatch configuration. All values come from environment variables."""

    # Database (shared with the web/ingestion process)
    database_path: Path = Field(default=Path("data/backups.db"))

    # Overdue detection
    check_interval: str = Field(default="20m")
    overdue_check_enabled: bool = Field(default=True)
    overdue_tolerance: str = Field(default="1h")
    default_expected_interval: str = Field(default="1d")
    interval_inference_runs: int = Field(default=10, ge=2)
    renotify_interval: str = Field(default="")
    notify_on_recovery: bool = Field(default=True)

    # Message templates (overdue alert only; recovery/escalation use built-ins)
    overdue_title_template: str = Field(default="")
    overdue_message_template: str = Field(default="")

    # ntfy push channel
    ntfy_url: str = Field(default="https://ntfy.sh")
    ntfy_topic: str = Field(default="")
    ntfy_token: str = Field(default="")
    ntfy_priority: int = Field(default=4)
    ntfy_tags: str = Field(default="warning,backup")

    # SMTP email channel
    smtp_host: str = Field(default="")
    smtp_port: int = Field(default=587)
    smtp_security: str = Field(default="starttls")
    smtp_username: str = Field(default="")
    smtp_password: str = Field(default="")
    smtp_from: str = Field(default="")
    smtp_to: str = Field(default="")

    # Delivery
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0)
    dispatch_max_attempts: int = Field(default=3, ge=1)
    dispatch_backoff_seconds: float = Field(default=1.0, ge=0)
    dispatch_backoff_max_seconds: float = Field(default=8.0, ge=0)

    # Control API
    control_host: str = Field(default="127.0.0.1")
    control_port: int = Field(default=8667)

    # Audit log retention
    audit_retention_days: int = Field(default=90, ge=0)
    audit_cleanup_interval: str = Field(default="1d")

    # Health / shutdown
    store_failure_threshold: int = Field(default=3, ge=1)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @field_validator(
        "check_interval",
        "overdue_tolerance",
        "default_expected_interval",
        "audit_cleanup_interval",
    )
    @classmethod
    def _check_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("renotify_interval")
    @classmethod
    def _check_optional_duration(cls, value: str) -> str:
        if value.strip():
            parse_duration(value)
        return value

    # -- Parsed views ----------------------------------------------------------

    @property
    def check_interval_delta(self) -> timedelta:
        return parse_duration(self.check_interval)

    @property
    def tolerance_delta(self) -> timedelta:
        return parse_duration(self.overdue_tolerance)

    @property
    def default_interval_delta(self) -> timedelta:
        return parse_duration(self.default_expected_interval)

    @property
    def renotify_delta(self) -> timedelta | None:
        """Escalation interval, or None when re-notification is off."""
        if not self.renotify_interval.strip():
            return None
        delta = parse_duration(self.renotify_interval)
        return delta if delta.total_seconds() > 0 else None

    @property
    def audit_cleanup_delta(self) -> timedelta:
        return parse_duration(self.audit_cleanup_interval)

    def get_channel_configs(self) -> list[PushChannelConfig | EmailChannelConfig]:
        """Build validated channel configs from the flat NTFY_*/SMTP_* settings.

        A channel is enabled when its anchor value (topic or host) is set.
        Raises ConfigurationError if an enabled channel is misconfigured.
        """
        raw: list[dict] = []
        if self.ntfy_topic.strip():
            raw.append({
                "kind": "push",
                "server_url": self.ntfy_url,
                "topic": self.ntfy_topic.strip(),
                "access_token": self.ntfy_token,
                "priority": self.ntfy_priority,
                "tags": _split(self.ntfy_tags),
            })
        if self.smtp_host.strip():
            raw.append({
                "kind": "email",
                "host": self.smtp_host.strip(),
                "port": self.smtp_port,
                "security": self.smtp_security,
                "username": self.smtp_username,
                "password": self.smtp_password,
                "sender": self.smtp_from.strip(),
                "recipients": _split(self.smtp_to),
            })

        configs = []
        for item in raw:
            try:
                configs.append(_channel_adapter.validate_python(item))
            except ValidationError as exc:
                msg = f"Invalid {item['kind']} channel configuration: {exc}"
                raise ConfigurationError(msg) from exc
        return configs


settings = Settings()
