"""Session store adapter speaking to the session document service over HTTP."""
from __future__ import annotations

from typing import Any, Mapping, Optional
import asyncio
import logging

import httpx

from .errors import (
    DocumentNotFound,
    NetworkUnavailable,
    PermissionDenied,
    SessionStoreError,
)
from .models import SessionDocument
from .store import ErrorCallback, SessionStore, SnapshotCallback, Subscription, check_fields

logger = logging.getLogger(__name__)


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise SessionStoreError(
            f"Session service returned a non-JSON body ({response.status_code})"
        ) from exc


def _document_from_payload(session_id: str, payload: Any) -> SessionDocument:
    if not isinstance(payload, dict):
        raise SessionStoreError("Session service returned an unexpected payload")
    return SessionDocument.from_fields(str(payload.get("id") or session_id), payload)


class HttpSessionStore(SessionStore):
    """:class:`SessionStore` backed by ``session_service``.

    ``initialize`` signs in anonymously, retrying ``auth_retries`` times with
    a fixed ``auth_retry_delay`` since the first request after a device comes
    online often fails. Watches poll the snapshot endpoint with ``If-None-Match``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        auth_retries: int = 3,
        auth_retry_delay: float = 1.0,
        auth_settle_delay: float = 0.5,
        poll_interval: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_retries = max(1, auth_retries)
        self.auth_retry_delay = auth_retry_delay
        self.auth_settle_delay = auth_settle_delay
        self.poll_interval = poll_interval
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self.uid: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self._token is not None

    async def initialize(self) -> None:
        if self._token is not None:
            return
        for attempt in range(1, self.auth_retries + 1):
            try:
                await self._sign_in()
                break
            except SessionStoreError as exc:
                remaining = self.auth_retries - attempt
                logger.warning("Anonymous sign-in failed (%d retries left): %s", remaining, exc)
                if remaining == 0:
                    raise
                await asyncio.sleep(self.auth_retry_delay)
        if self.auth_settle_delay:
            await asyncio.sleep(self.auth_settle_delay)
        logger.info("Session store initialized for client %s", self.uid)

    async def _sign_in(self) -> None:
        response = await self._send("POST", "/auth/anonymous", authorize=False)
        self._raise_for_status(response)
        payload = _json_body(response)
        if not isinstance(payload, dict) or not payload.get("token"):
            raise SessionStoreError("Session service returned no access token")
        self._token = str(payload["token"])
        self.uid = payload.get("uid")

    async def _send(self, method: str, url: str, *, authorize: bool = True, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if authorize and self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise NetworkUnavailable(f"Session service unreachable: {exc}") from exc

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._token is None:
            await self.initialize()
        response = await self._send(method, url, **kwargs)
        if response.status_code == httpx.codes.UNAUTHORIZED:
            # Tokens expire; sign in again once before giving up.
            self._token = None
            await self._sign_in()
            response = await self._send(method, url, **kwargs)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                raise PermissionDenied("Session service rejected the access token")
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code == httpx.codes.FORBIDDEN:
            raise PermissionDenied(_detail(response) or "Access denied")
        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise PermissionDenied(_detail(response) or "Unauthorized")
        if response.status_code == httpx.codes.NOT_FOUND:
            raise DocumentNotFound(_detail(response) or "Session not found")
        if response.is_server_error:
            raise SessionStoreError(f"Session service error {response.status_code}")
        if response.is_error:
            raise SessionStoreError(
                f"Session service rejected request ({response.status_code}): {_detail(response)}"
            )

    async def get(self, session_id: str) -> Optional[SessionDocument]:
        response = await self._request("GET", f"/sessions/{session_id}")
        if response.status_code == httpx.codes.NOT_FOUND:
            return None
        self._raise_for_status(response)
        return _document_from_payload(session_id, _json_body(response))

    async def set(self, session_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        response = await self._request(
            "PUT",
            f"/sessions/{session_id}",
            params={"merge": "true" if merge else "false"},
            json=check_fields(fields),
        )
        self._raise_for_status(response)

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> None:
        response = await self._request("PATCH", f"/sessions/{session_id}", json=check_fields(fields))
        self._raise_for_status(response)

    def watch(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        subscription = Subscription(session_id, on_snapshot, on_error)
        task = asyncio.get_running_loop().create_task(self._poll(subscription))
        subscription.attach_task(task)
        return subscription

    async def _poll(self, subscription: Subscription) -> None:
        etag: Optional[str] = None
        missing_reported = False
        while subscription.active:
            try:
                headers = {"If-None-Match": etag} if etag else None
                response = await self._request(
                    "GET", f"/sessions/{subscription.session_id}/snapshot", headers=headers
                )
                if response.status_code == httpx.codes.NOT_FOUND:
                    etag = None
                    if not missing_reported:
                        missing_reported = True
                        subscription.deliver(None)
                elif response.status_code != httpx.codes.NOT_MODIFIED:
                    self._raise_for_status(response)
                    etag = response.headers.get("ETag")
                    missing_reported = False
                    subscription.deliver(
                        _document_from_payload(subscription.session_id, _json_body(response))
                    )
            except SessionStoreError as exc:
                subscription.fail(exc)
            await asyncio.sleep(self.poll_interval)

    async def close(self) -> None:
        await self._client.aclose()


def _detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict) and "detail" in payload:
        return str(payload["detail"])
    return str(payload)


__all__ = ["HttpSessionStore"]
