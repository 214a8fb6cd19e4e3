"""Process settings, read from ``ALERTPIPE_*`` environment variables or ``.env``."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from alertpipe.core.durations import parse_duration

_DURATION_FIELDS = (
    "scrape_interval",
    "evaluation_interval",
    "router_interval",
    "lookback",
    "delivery_initial_backoff",
    "delivery_max_backoff",
    "delivery_timeout",
    "shutdown_grace",
)


class Settings(BaseSettings):
    """All configuration for the alertpipe process.

    Durations accept seconds or duration strings (``15s``, ``5m``).
    """

    model_config = SettingsConfigDict(
        env_prefix="ALERTPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Scrape endpoint
    host: str = "127.0.0.1"
    port: int = Field(default=9464, ge=0, le=65535)

    # Configuration files
    rules_file: Path = Path("alert_rules.yml")
    router_config_file: Path = Path("alertmanager.yml")

    # Loop cadence (seconds)
    scrape_interval: float = Field(default=15.0, gt=0)
    evaluation_interval: float = Field(default=15.0, gt=0)
    router_interval: float = Field(default=1.0, gt=0)
    lookback: float = Field(default=300.0, gt=0)

    # Target labels and remote targets
    job: str = "alertpipe"
    instance: str | None = None
    scrape_targets: list[str] = Field(default_factory=list)

    # Notification delivery
    delivery_max_attempts: int = Field(default=5, ge=1)
    delivery_initial_backoff: float = Field(default=0.5, ge=0)
    delivery_max_backoff: float = Field(default=30.0, ge=0)
    delivery_timeout: float = Field(default=10.0, gt=0)
    shutdown_grace: float = Field(default=10.0, ge=0)

    # Logging
    log_level: str = "INFO"
    event_log_size: int = Field(default=1000, ge=1)

    @field_validator(*_DURATION_FIELDS, mode="before")
    @classmethod
    def _parse_durations(cls, value: object) -> object:
        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                return parse_duration(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def instance_label(self) -> str:
        return self.instance or f"{self.host}:{self.port}"
