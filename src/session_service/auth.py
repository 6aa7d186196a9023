"""Anonymous access tokens for session clients."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple
import time
import uuid

from fastapi import Depends, Header, HTTPException, status
from itsdangerous import BadData, URLSafeSerializer

from .config import Settings, get_settings


@dataclass
class TokenIssuer:
    """Signs and verifies opaque anonymous tokens."""

    secret_key: str
    salt: str
    max_age: int

    def __post_init__(self) -> None:
        self._serializer = URLSafeSerializer(self.secret_key, salt=self.salt)

    def issue(self) -> Tuple[str, str, int, int]:
        uid = uuid.uuid4().hex
        issued_at = int(time.time())
        expires_at = issued_at + self.max_age
        payload = {"u": uid, "iat": issued_at, "exp": expires_at}
        return self._serializer.dumps(payload), uid, issued_at, expires_at

    def verify(self, token: str) -> Optional[str]:
        try:
            payload: Any = self._serializer.loads(token)
        except BadData:
            return None
        if not isinstance(payload, dict):
            return None
        uid = payload.get("u")
        exp_value = payload.get("exp")
        if not uid or exp_value is None:
            return None
        try:
            expires_at = int(exp_value)
        except (TypeError, ValueError):
            return None
        if time.time() > expires_at:
            return None
        return str(uid)


def provide_settings() -> Settings:
    """Dependency returning the active :class:`Settings` instance."""

    return get_settings()


def provide_token_issuer(settings: Settings = Depends(provide_settings)) -> TokenIssuer:
    return TokenIssuer(settings.secret_key, settings.token_salt, settings.token_max_age)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not isinstance(authorization, str):
        return None
    scheme, _, token_value = authorization.partition(" ")
    if scheme.lower() == "bearer" and token_value.strip():
        return token_value.strip()
    return None


async def require_client(
    authorization: Optional[str] = Header(default=None),
    issuer: TokenIssuer = Depends(provide_token_issuer),
) -> str:
    """Resolve the anonymous uid of the caller or reject the request."""

    token = _extract_bearer(authorization)
    uid = issuer.verify(token) if token else None
    if uid is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid access token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return uid


__all__ = ["TokenIssuer", "provide_settings", "provide_token_issuer", "require_client"]
