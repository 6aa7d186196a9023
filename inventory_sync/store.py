"""Session store adapters: one remote document per session id."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional
import asyncio
import logging

from .errors import DocumentNotFound, NetworkUnavailable, PermissionDenied, SessionStoreError
from .models import SessionDocument

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Optional[SessionDocument]], None]
ErrorCallback = Callable[[SessionStoreError], None]

DOCUMENT_FIELDS = ("json", "adminPin", "updated")


def check_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(DOCUMENT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown session document fields: {sorted(unknown)}")
    return dict(fields)


class Subscription:
    """Handle for a live watch on one session document.

    ``cancel`` releases the underlying listener and is safe to call more than
    once; callbacks scheduled before the cancel are dropped.
    """

    def __init__(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
        on_cancel: Optional[Callable[[], None]] = None,
    ) -> None:
        self.session_id = session_id
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._on_cancel = on_cancel
        self._task: Optional[asyncio.Task] = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def attach_task(self, task: asyncio.Task) -> None:
        self._task = task

    def deliver(self, document: Optional[SessionDocument]) -> None:
        if self._active:
            self._on_snapshot(document)

    def fail(self, error: SessionStoreError) -> None:
        if self._active:
            self._on_error(error)

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if self._on_cancel is not None:
            self._on_cancel()


class SessionStore(ABC):
    """Get / set / watch access to session documents."""

    @property
    @abstractmethod
    def ready(self) -> bool:
        """Whether :meth:`initialize` completed."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the adapter; raises :class:`SessionStoreError` on failure."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SessionDocument]:
        """Return the document or ``None`` when it does not exist."""

    @abstractmethod
    async def set(self, session_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        """Create or overwrite the document; ``merge`` keeps fields not supplied."""

    @abstractmethod
    async def update(self, session_id: str, fields: Mapping[str, Any]) -> None:
        """Change fields of an existing document, raising :class:`DocumentNotFound`."""

    @abstractmethod
    def watch(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """Deliver the current document and every later change until cancelled."""

    async def close(self) -> None:
        return None


class MemorySessionStore(SessionStore):
    """In-process store shared by every engine that holds a reference to it.

    ``readable`` governs one-time reads, ``writable`` governs writes and
    ``online`` simulates connectivity; together they reproduce the access
    rules and outages of a real backing store.
    """

    def __init__(self, *, readable: bool = True, writable: bool = True, online: bool = True) -> None:
        self.readable = readable
        self.writable = writable
        self.online = online
        self._ready = False
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._subscriptions: Dict[str, List[Subscription]] = {}

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        if not self.online:
            raise NetworkUnavailable("Session store is offline")
        self._ready = True

    def _check(self, *, read: bool = False, write: bool = False) -> None:
        if not self.online:
            self._ready = False
            raise NetworkUnavailable("Session store is offline")
        if read and not self.readable:
            raise PermissionDenied("Reads are not allowed on this path")
        if write and not self.writable:
            raise PermissionDenied("Writes are not allowed on this path")

    def peek(self, session_id: str) -> Optional[SessionDocument]:
        """Return the stored document without applying access rules."""

        fields = self._documents.get(session_id)
        if fields is None:
            return None
        return SessionDocument.from_fields(session_id, fields)

    async def get(self, session_id: str) -> Optional[SessionDocument]:
        self._check(read=True)
        return self.peek(session_id)

    async def set(self, session_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        self._check(write=True)
        values = check_fields(fields)
        current = self._documents.get(session_id)
        if current is None or not merge:
            current = {name: None for name in DOCUMENT_FIELDS}
        current.update(values)
        self._documents[session_id] = current
        self._publish(session_id)

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> None:
        self._check(write=True)
        values = check_fields(fields)
        current = self._documents.get(session_id)
        if current is None:
            raise DocumentNotFound(f"No document for session {session_id}")
        current.update(values)
        self._publish(session_id)

    def watch(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        def _release() -> None:
            self._unsubscribe(session_id, subscription)

        subscription = Subscription(session_id, on_snapshot, on_error, _release)
        self._subscriptions.setdefault(session_id, []).append(subscription)
        loop = asyncio.get_running_loop()
        if not self.online:
            loop.call_soon(subscription.fail, NetworkUnavailable("Session store is offline"))
        else:
            loop.call_soon(subscription.deliver, self.peek(session_id))
        return subscription

    def listener_count(self, session_id: str) -> int:
        return len(self._subscriptions.get(session_id, []))

    def _unsubscribe(self, session_id: str, subscription: Subscription) -> None:
        listeners = self._subscriptions.get(session_id, [])
        if subscription in listeners:
            listeners.remove(subscription)

    def _publish(self, session_id: str) -> None:
        listeners = self._subscriptions.get(session_id)
        if not listeners:
            return
        loop = asyncio.get_running_loop()
        for subscription in list(listeners):
            loop.call_soon(subscription.deliver, self.peek(session_id))


__all__ = [
    "DOCUMENT_FIELDS",
    "ErrorCallback",
    "MemorySessionStore",
    "SessionStore",
    "SnapshotCallback",
    "Subscription",
]
