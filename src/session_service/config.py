"""Application configuration objects."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings used to configure the session document service."""

    model_config = SettingsConfigDict(
        env_prefix="SESSION_SERVICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(
        default="Inventory Session Service",
        description="Human friendly name for the API.",
    )
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Deployment environment flag used for logging.",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./sessions.db",
        description="SQLAlchemy compatible database URL.",
    )
    echo_sql: bool = Field(
        default=False,
        description="Enable SQL echo logging for debugging.",
    )
    sqlite_busy_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Seconds SQLite waits on a locked database file.",
    )
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, gt=0, lt=65536)
    secret_key: str = Field(
        default="inventory-session-secret",
        description="Key used to sign anonymous access tokens.",
    )
    token_salt: str = Field(default="inventory-session-token")
    token_max_age: int = Field(
        default=60 * 60 * 24 * 30,
        gt=0,
        description="Lifetime of an anonymous token in seconds.",
    )
    allow_session_reads: bool = Field(
        default=True,
        description=(
            "When disabled, one-time reads of a session are forbidden while "
            "writes and snapshot polling stay allowed."
        ),
    )

    @field_validator("database_url")
    @classmethod
    def validate_sqlite_path(cls, value: str) -> str:
        if value.startswith("sqlite") and ":memory:" not in value and "///" not in value:
            raise ValueError(
                "SQLite database URLs should be in the form sqlite+aiosqlite:///path/to/db"
            )
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of :class:`Settings`."""

    return Settings()


__all__ = ["Settings", "get_settings"]
