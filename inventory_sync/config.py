"""Client configuration objects."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for the sync client, read from ``INVENTORY_SYNC_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="INVENTORY_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    service_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the session document service.",
    )
    cache_dir: Path = Field(
        default=Path(".inventory_cache"),
        description="Directory holding the local inventory cache.",
    )
    cache_debounce_seconds: float = Field(
        default=0.75,
        ge=0,
        description="Delay after the last change before the cache is written.",
    )
    request_timeout: float = Field(default=10.0, gt=0)
    auth_retries: int = Field(
        default=3,
        ge=1,
        description="Anonymous sign-in attempts before initialization fails.",
    )
    auth_retry_delay: float = Field(default=1.0, ge=0)
    auth_settle_delay: float = Field(
        default=0.5,
        ge=0,
        description="Pause after a fresh sign-in so the token is accepted everywhere.",
    )
    poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between snapshot polls of the session document.",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="How long connect waits for the first snapshot.",
    )
    low_stock_threshold: int = Field(default=5)

    @field_validator("service_url")
    @classmethod
    def normalize_service_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("service_url must be an http(s) URL")
        return value.rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


__all__ = ["Settings", "get_settings"]
