"""
Centralized settings for the provisioner.

All fields can be set via ``PROVISIONER_*`` environment variables (e.g.
``PROVISIONER_WORKER_COUNT=10``) or through a ``.env`` file.

Tags:
    provisioner, configuration, settings, pydantic, caching, validation
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from provisioner.operations.retry import RetryStrategy


class LogFormat(str, Enum):
    """Supported log renderers."""

    CONSOLE = "console"
    JSON = "json"


class ProvisionerSettings(BaseSettings):
    """Provisioner centralized configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///provisioner.db")
    database_echo: bool = Field(default=False)

    # ── Worker pool ──────────────────────────────────────────────
    worker_count: int = Field(default=5, ge=1, description="Concurrent operation workers per queue")
    default_requeue_delay_seconds: float = Field(
        default=20.0,
        gt=0,
        description="Delay before retrying an operation after a recoverable error",
    )

    # ── Persistence retry ────────────────────────────────────────
    write_retry_attempts: int = Field(default=5, ge=1)
    write_retry_delay_seconds: float = Field(default=0.01, ge=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default=LogFormat.CONSOLE)

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"unsupported log level: {value}")
        return level

    # ── Derived properties ───────────────────────────────────────

    @property
    def default_requeue_delay(self) -> float:
        return self.default_requeue_delay_seconds

    def write_retry_strategy(self) -> RetryStrategy:
        """Retry policy applied to every persisted write and failure side effect."""
        from provisioner.operations.retry import ExponentialBackoff

        return ExponentialBackoff(
            max_attempts=self.write_retry_attempts,
            base_delay=self.write_retry_delay_seconds,
            multiplier=1.0,
            jitter_range=0.1,
        )


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, ProvisionerSettings] = {}


def get_settings(*, env_file: str | None = None, _force_reload: bool = False) -> ProvisionerSettings:
    """Load, validate, and cache a :class:`ProvisionerSettings` instance.

    Parameters
    ----------
    env_file:
        Explicit ``.env`` file to read instead of ``./.env``.
    _force_reload:
        Bypass cache and reload.
    """
    cache_key = env_file or ""

    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    if env_file:
        settings = ProvisionerSettings(_env_file=env_file)  # type: ignore[call-arg]
    else:
        settings = ProvisionerSettings()

    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
