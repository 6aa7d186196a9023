"""Session synchronization engine.

The engine keeps one local inventory snapshot and one remote session document
converged. Consistency is "last writer wins, no field merge": every remote
snapshot replaces the local map wholesale, and every push overwrites the
remote ``json`` with the full local map. Concurrent edits from two admins are
therefore not merged; whichever write lands last is what everybody sees.
While newer pushes are still in flight, echoes of this engine's own older
pushes are skipped so they cannot roll back edits made since.
"""
from __future__ import annotations

from collections import deque
from concurrent.futures import Future as ConcurrentFuture
from typing import Callable, Deque, Mapping, Optional, Set, Union
import asyncio
import logging
import threading

from .errors import (
    CorruptSnapshot,
    DocumentNotFound,
    NetworkUnavailable,
    PermissionDenied,
    ReadOnlyError,
    SessionStoreError,
    SyncFailed,
)
from .models import (
    CloudState,
    ConnectionState,
    InventoryItem,
    InventoryMap,
    SessionDocument,
    dump_inventory_map,
    normalize_session_id,
    now_iso,
    parse_inventory_map,
)
from .store import SessionStore, Subscription

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[InventoryMap, bool], None]
ErrorHandler = Callable[[str], None]
PushHandle = Union["asyncio.Task[bool]", "ConcurrentFuture[bool]"]

OFFLINE_MESSAGE = "Network unavailable. Working offline."
ACCESS_DENIED_MESSAGE = "Access denied. Database rules restrict this path."
CONNECTION_LOST_MESSAGE = "Connection lost. Retrying..."
CORRUPT_MESSAGE = "Corrupted data received"
SYNC_FAILED_MESSAGE = "Sync Failed"
CONNECT_TIMEOUT_MESSAGE = "Timed out waiting for session data"

_ISSUED_HISTORY = 16


def _describe(exc: BaseException) -> str:
    if isinstance(exc, NetworkUnavailable):
        return OFFLINE_MESSAGE
    if isinstance(exc, PermissionDenied):
        return ACCESS_DENIED_MESSAGE
    return str(exc) or exc.__class__.__name__


class SyncEngine:
    """Connects to one session at a time and mirrors the inventory through it."""

    def __init__(
        self,
        store: SessionStore,
        state: Optional[CloudState] = None,
        *,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorHandler] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.state = state if state is not None else CloudState()
        self.on_update = on_update
        self.on_error = on_error
        self.connect_timeout = connect_timeout
        self._pin = ""
        self._subscription: Optional[Subscription] = None
        self._first_snapshot: Optional[asyncio.Event] = None
        self._push_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()
        self._foreign: Set[ConcurrentFuture] = set()
        self._foreign_lock = threading.Lock()
        self._in_flight = 0
        self._issued: Deque[str] = deque(maxlen=_ISSUED_HISTORY)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    @property
    def is_admin(self) -> bool:
        return self.state.phase is ConnectionState.CONNECTED_ADMIN

    @property
    def watching(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def connect(self, session_id: str, pin: str = "") -> CloudState:
        """Join ``session_id``, creating or claiming it when possible.

        Returns the engine state once the first snapshot arrived, the watch
        failed, or ``connect_timeout`` elapsed.
        """

        sid = normalize_session_id(session_id)
        if not sid:
            raise ValueError("Session id is required")
        pin = (pin or "").strip()

        self.disconnect()
        self._loop = asyncio.get_running_loop()
        self._issued.clear()
        self._pin = pin
        state = self.state
        state.session_id = sid
        state.phase = ConnectionState.CONNECTING
        state.error = None

        try:
            if not self.store.ready:
                await self.store.initialize()
        except SessionStoreError as exc:
            return self._fail_connect(exc)

        try:
            document = await self.store.get(sid)
        except PermissionDenied as exc:
            logger.warning("Reading session %s was denied (%s); attempting blind join", sid, exc)
            try:
                # adminPin is left alone: an unreadable session may already be claimed.
                await self.store.set(sid, {"updated": now_iso()}, merge=True)
            except SessionStoreError as blind_exc:
                return self._fail_connect(blind_exc)
        except SessionStoreError as exc:
            return self._fail_connect(exc)
        else:
            try:
                await self._create_or_claim(sid, pin, document)
            except SessionStoreError as exc:
                logger.warning("Could not create or claim session %s: %s", sid, exc)

        first_snapshot = asyncio.Event()
        self._first_snapshot = first_snapshot
        self._subscription = self.store.watch(sid, self._handle_snapshot, self._handle_watch_error)
        try:
            await asyncio.wait_for(first_snapshot.wait(), self.connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("No snapshot for session %s after %.1fs", sid, self.connect_timeout)
            state.error = CONNECT_TIMEOUT_MESSAGE
            self._notify_error(CONNECT_TIMEOUT_MESSAGE)
        return state

    async def reconnect(self) -> CloudState:
        """Retry the last session, e.g. after the engine landed in ``ERROR``."""

        if not self.state.session_id:
            raise ValueError("No session to reconnect to")
        return await self.connect(self.state.session_id, self._pin)

    def disconnect(self) -> None:
        """Release the watch. Safe to call repeatedly or when never connected."""

        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.cancel()
            logger.info("Disconnected from session %s", subscription.session_id)
        if self._first_snapshot is not None:
            self._first_snapshot.set()
            self._first_snapshot = None
        state = self.state
        state.connected = False
        state.is_read_only = False
        state.syncing = False
        state.phase = ConnectionState.DISCONNECTED

    async def _create_or_claim(
        self, sid: str, pin: str, document: Optional[SessionDocument]
    ) -> None:
        if document is None:
            logger.info("Creating session %s", sid)
            await self.store.set(
                sid, {"json": "{}", "updated": now_iso(), "adminPin": pin}, merge=True
            )
        elif not document.is_claimed and pin:
            logger.info("Claiming unclaimed session %s", sid)
            await self.store.set(sid, {"adminPin": pin}, merge=True)

    def _fail_connect(self, exc: SessionStoreError) -> CloudState:
        message = _describe(exc)
        logger.warning("Connecting to session %s failed: %s", self.state.session_id, exc)
        self.state.phase = ConnectionState.DISCONNECTED
        self.state.connected = False
        self.state.error = message
        self._notify_error(message)
        return self.state

    # ------------------------------------------------------------------
    # Remote snapshots
    # ------------------------------------------------------------------
    def _handle_snapshot(self, document: Optional[SessionDocument]) -> None:
        error: Optional[str] = None
        if document is None:
            inventory: InventoryMap = {}
            read_only = False
        else:
            read_only = bool(document.admin_pin) and document.admin_pin != self._pin
            if not read_only and self._is_stale_echo(document.json):
                logger.debug("Skipping echo of an earlier push to %s", document.session_id)
                return
            try:
                inventory = parse_inventory_map(document.json) if document.json else {}
            except CorruptSnapshot as exc:
                logger.error("Session %s holds corrupt data: %s", document.session_id, exc)
                inventory = {}
                read_only = True
                error = CORRUPT_MESSAGE

        state = self.state
        state.connected = True
        state.is_read_only = read_only
        state.error = error
        state.phase = (
            ConnectionState.CONNECTED_READONLY if read_only else ConnectionState.CONNECTED_ADMIN
        )
        if self.on_update is not None:
            self.on_update(inventory, read_only)
        if error is not None:
            self._notify_error(error)
        if self._first_snapshot is not None:
            self._first_snapshot.set()

    def _handle_watch_error(self, exc: SessionStoreError) -> None:
        logger.error("Watch on session %s failed: %s", self.state.session_id, exc)
        if isinstance(exc, PermissionDenied):
            message = ACCESS_DENIED_MESSAGE
            self.state.phase = ConnectionState.ERROR
            self.state.connected = False
            if self._subscription is not None:
                self._subscription.cancel()
                self._subscription = None
        else:
            message = CONNECTION_LOST_MESSAGE
        self.state.error = message
        self._notify_error(message)
        if self._first_snapshot is not None:
            self._first_snapshot.set()

    def _is_stale_echo(self, payload: Optional[str]) -> bool:
        """Whether ``payload`` is one of our own superseded pushes coming back.

        Applying it while a newer push is still in flight would roll the local
        map back and lose edits made in between.
        """

        if not self._in_flight or payload is None or not self._issued:
            return False
        return payload != self._issued[-1] and payload in self._issued

    def _notify_error(self, message: str) -> None:
        if self.on_error is not None:
            self.on_error(message)

    # ------------------------------------------------------------------
    # Pushes
    # ------------------------------------------------------------------
    async def push(self, inventory: Mapping[str, InventoryItem]) -> bool:
        """Overwrite the remote document with ``inventory``.

        Returns ``False`` without touching the network unless connected as
        admin, and ``False`` when the write did not confirm.
        """

        if not self.is_admin:
            return False
        payload = dump_inventory_map(inventory)
        self._issue(payload)
        try:
            return await self._push_payload(self.state.session_id, payload)
        finally:
            self._settle()

    def schedule_push(self, inventory: Mapping[str, InventoryItem]) -> Optional[PushHandle]:
        """Start a push without waiting for it; pushes complete in issue order.

        Safe to call from another thread; the push then runs on the loop the
        engine connected on and :meth:`wait_idle` still waits for it.
        """

        if not self.is_admin or self._loop is None or self._loop.is_closed():
            return None
        sid = self.state.session_id
        payload = dump_inventory_map(inventory)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not self._loop:
            future = asyncio.run_coroutine_threadsafe(self._push_issued(sid, payload), self._loop)
            with self._foreign_lock:
                self._foreign.add(future)
            future.add_done_callback(self._forget_foreign)
            return future
        self._issue(payload)
        task = self._loop.create_task(self._push_payload(sid, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(self._settle)
        return task

    async def wait_idle(self) -> None:
        """Wait until every scheduled push finished, including cross-thread ones."""

        while True:
            with self._foreign_lock:
                foreign = list(self._foreign)
            waiters = [*self._pending, *(asyncio.wrap_future(future) for future in foreign)]
            if not waiters:
                return
            await asyncio.gather(*waiters, return_exceptions=True)

    def _forget_foreign(self, future: ConcurrentFuture) -> None:
        with self._foreign_lock:
            self._foreign.discard(future)

    def _issue(self, payload: str) -> None:
        self._in_flight += 1
        self._issued.append(payload)

    def _settle(self, _task: Optional[asyncio.Task] = None) -> None:
        self._in_flight = max(0, self._in_flight - 1)

    async def _push_issued(self, sid: str, payload: str) -> bool:
        self._issue(payload)
        try:
            return await self._push_payload(sid, payload)
        finally:
            self._settle()

    async def _push_payload(self, sid: str, payload: str) -> bool:
        async with self._push_lock:
            if not self.is_admin or self.state.session_id != sid:
                return False
            self.state.syncing = True
            try:
                await self._write(sid, payload)
            except SyncFailed as exc:
                logger.warning("Push to session %s failed: %s", sid, exc)
                self.state.error = SYNC_FAILED_MESSAGE
                self._notify_error(SYNC_FAILED_MESSAGE)
                return False
            finally:
                self.state.syncing = False
        if self.state.error == SYNC_FAILED_MESSAGE:
            self.state.error = None
        return True

    async def _write(self, sid: str, payload: str) -> None:
        fields = {"json": payload, "updated": now_iso()}
        try:
            try:
                await self.store.update(sid, fields)
            except DocumentNotFound:
                await self.store.set(sid, fields, merge=True)
        except SessionStoreError as exc:
            raise SyncFailed(str(exc)) from exc

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    async def reset_pin(self, new_pin: str) -> bool:
        """Replace the admin PIN of the connected session."""

        if not self.is_admin:
            raise ReadOnlyError("Only the session admin can change the PIN")
        sid = self.state.session_id
        previous, self._pin = self._pin, (new_pin or "").strip()
        try:
            await self.store.set(sid, {"adminPin": self._pin, "updated": now_iso()}, merge=True)
        except SessionStoreError as exc:
            self._pin = previous
            logger.warning("Resetting PIN of session %s failed: %s", sid, exc)
            self.state.error = _describe(exc)
            self._notify_error(self.state.error)
            return False
        logger.info("PIN of session %s updated", sid)
        return True


__all__ = ["SyncEngine", "PushHandle", "UpdateCallback", "ErrorHandler"]
