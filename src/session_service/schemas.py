"""Pydantic schemas used by the API."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class SessionWrite(BaseModel):
    """Fields a client may write; unset fields are left alone by merge writes."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    payload: str | None = Field(
        default=None,
        alias="json",
        description="Serialized inventory map.",
    )
    admin_pin: str | None = Field(default=None, alias="adminPin")
    updated: str | None = Field(default=None, description="ISO-8601 write time.")


class SessionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    payload: str | None = Field(default=None, alias="json")
    admin_pin: str | None = Field(default=None, alias="adminPin")
    updated: str | None = None
    revision: int = 0


class AnonymousToken(BaseModel):
    token: str
    uid: str
    issued_at: int
    expires_at: int


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    environment: str


__all__ = [
    "AnonymousToken",
    "HealthStatus",
    "SessionOut",
    "SessionWrite",
]
