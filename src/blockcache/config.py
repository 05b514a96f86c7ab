from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from blockcache.manifest import LockOptions

CacheMode = Literal["record", "replay", "off"]


class ConfigurationError(ValueError):
    """Raised when cache settings are missing or invalid."""


class CacheSettings(BaseSettings):
    """Process-wide cache configuration, read once from BLOCKCACHE_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="BLOCKCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    root: Path = Field(default_factory=lambda: Path.cwd() / "block-cache")
    mode: CacheMode = "record"
    log_level: str = "INFO"

    auto_use: bool = False
    auto_require_full_cover: bool = True

    lock_timeout_ms: int = Field(default=15_000, ge=0)
    lock_stale_ms: int = Field(default=60_000, ge=0)
    lock_base_delay_ms: int = Field(default=25, ge=0)
    lock_backoff_factor: float = Field(default=1.5, ge=1.0)
    lock_max_delay_ms: int = Field(default=500, ge=0)
    lock_jitter_ms: int = Field(default=25, ge=0)

    replay_concurrency: int = Field(default=2, ge=1)

    @field_validator("mode", mode="before")
    @classmethod
    def _lower_mode(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    def lock_options(self) -> LockOptions:
        return LockOptions(
            timeout=self.lock_timeout_ms / 1000,
            stale_after=self.lock_stale_ms / 1000,
            base_delay=self.lock_base_delay_ms / 1000,
            backoff_factor=self.lock_backoff_factor,
            max_delay=self.lock_max_delay_ms / 1000,
            jitter=self.lock_jitter_ms / 1000,
        )


def load_settings(**overrides: Any) -> CacheSettings:
    """Build settings from the environment plus explicit overrides, failing fast on bad values."""
    try:
        return CacheSettings(**{key: value for key, value in overrides.items() if value is not None})
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}"
            for error in exc.errors()
        )
        raise ConfigurationError(f"Invalid cache settings: {problems}") from exc
