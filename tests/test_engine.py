from __future__ import annotations

import asyncio
import json
from typing import List, Tuple

import pytest

from inventory_sync.engine import (
    ACCESS_DENIED_MESSAGE,
    CONNECT_TIMEOUT_MESSAGE,
    CORRUPT_MESSAGE,
    OFFLINE_MESSAGE,
    SYNC_FAILED_MESSAGE,
    SyncEngine,
)
from inventory_sync.errors import DocumentNotFound, PermissionDenied, ReadOnlyError
from inventory_sync.models import ConnectionState, InventoryItem, parse_inventory_map
from inventory_sync.store import MemorySessionStore, Subscription


class Recorder:
    def __init__(self) -> None:
        self.updates: List[Tuple[dict, bool]] = []
        self.errors: List[str] = []

    def on_update(self, inventory, read_only) -> None:
        self.updates.append((inventory, read_only))

    def on_error(self, message) -> None:
        self.errors.append(message)


def _engine(store, recorder=None, **kwargs) -> SyncEngine:
    recorder = recorder or Recorder()
    return SyncEngine(
        store,
        on_update=recorder.on_update,
        on_error=recorder.on_error,
        connect_timeout=kwargs.pop("connect_timeout", 1.0),
        **kwargs,
    )


async def test_new_session_is_created_and_claimed(store: MemorySessionStore) -> None:
    recorder = Recorder()
    engine = _engine(store, recorder)

    state = await engine.connect(" wh.north/1 ", "1234")

    assert state.session_id == "WH_NORTH_1"
    assert state.phase is ConnectionState.CONNECTED_ADMIN
    assert state.connected and not state.is_read_only
    document = store.peek("WH_NORTH_1")
    assert document.admin_pin == "1234"
    assert document.json == "{}"
    assert document.updated
    assert recorder.updates[-1] == ({}, False)


async def test_second_pin_is_read_only_and_keeps_admin_pin(store: MemorySessionStore) -> None:
    await _engine(store).connect("dock-7", "1234")

    other = _engine(store)
    state = await other.connect("dock-7", "0000")

    assert state.is_read_only
    assert state.phase is ConnectionState.CONNECTED_READONLY
    assert store.peek("DOCK-7").admin_pin == "1234"


async def test_empty_pin_creates_unlocked_session_that_can_be_claimed(
    store: MemorySessionStore,
) -> None:
    first = await _engine(store).connect("open", "")
    assert first.phase is ConnectionState.CONNECTED_ADMIN
    assert store.peek("OPEN").admin_pin == ""

    second = await _engine(store).connect("open", "5555")
    assert second.phase is ConnectionState.CONNECTED_ADMIN
    assert store.peek("OPEN").admin_pin == "5555"


async def test_legacy_session_is_claimed(store: MemorySessionStore) -> None:
    await store.set("LEGACY", {"json": '{"A1": {"part": "A1", "qty": 2}}', "adminPin": ""})

    recorder = Recorder()
    state = await _engine(store, recorder).connect("legacy", "9999")

    assert store.peek("LEGACY").admin_pin == "9999"
    assert state.phase is ConnectionState.CONNECTED_ADMIN
    inventory, read_only = recorder.updates[-1]
    assert not read_only
    assert inventory["A1"].qty == 2


async def test_blind_join_when_reads_are_denied() -> None:
    store = MemorySessionStore()
    await store.set("LOCKED", {"json": "{}", "adminPin": "1111"})
    store.readable = False

    state = await _engine(store).connect("locked", "2222")

    document = store.peek("LOCKED")
    assert document.admin_pin == "1111"
    assert document.updated
    assert state.phase is ConnectionState.CONNECTED_READONLY


async def test_blind_join_failure_stays_disconnected() -> None:
    store = MemorySessionStore(readable=False, writable=False)
    recorder = Recorder()

    state = await _engine(store, recorder).connect("locked", "1234")

    assert state.phase is ConnectionState.DISCONNECTED
    assert not state.connected
    assert state.error == ACCESS_DENIED_MESSAGE
    assert recorder.errors == [ACCESS_DENIED_MESSAGE]
    assert store.listener_count("LOCKED") == 0


async def test_offline_connect_retries_initialization_later() -> None:
    store = MemorySessionStore(online=False)
    recorder = Recorder()
    engine = _engine(store, recorder)

    state = await engine.connect("dock-1", "1234")
    assert state.phase is ConnectionState.DISCONNECTED
    assert state.error == OFFLINE_MESSAGE
    assert not store.ready

    store.online = True
    state = await engine.reconnect()
    assert store.ready
    assert state.phase is ConnectionState.CONNECTED_ADMIN
    assert state.error is None


async def test_corrupt_snapshot_forces_read_only(store: MemorySessionStore) -> None:
    await store.set("BROKEN", {"json": "{not json", "adminPin": "1234"})
    recorder = Recorder()

    state = await _engine(store, recorder).connect("broken", "1234")

    assert state.is_read_only
    assert state.error == CORRUPT_MESSAGE
    assert recorder.updates[-1] == ({}, True)
    assert CORRUPT_MESSAGE in recorder.errors


async def test_remote_snapshot_replaces_inventory(store: MemorySessionStore, drain) -> None:
    recorder = Recorder()
    admin = _engine(store)
    await admin.connect("shared", "1234")
    await _engine(store, recorder).connect("shared", "0000")

    await admin.push({"P-1": InventoryItem(part="P-1", bin="307A", qty=5)})
    await drain()

    inventory, read_only = recorder.updates[-1]
    assert read_only
    assert list(inventory) == ["P-1"]
    assert inventory["P-1"].bin == "307A"


async def test_disconnect_is_idempotent_and_releases_watch(
    store: MemorySessionStore, drain
) -> None:
    recorder = Recorder()
    engine = _engine(store, recorder)
    engine.disconnect()

    await engine.connect("dock-2", "1234")
    assert store.listener_count("DOCK-2") == 1

    engine.disconnect()
    engine.disconnect()
    assert store.listener_count("DOCK-2") == 0
    assert engine.state.phase is ConnectionState.DISCONNECTED
    assert not engine.state.connected

    seen = len(recorder.updates)
    await store.set("DOCK-2", {"json": '{"X": {"part": "X"}}'})
    await drain()
    assert len(recorder.updates) == seen


async def test_reconnect_keeps_a_single_watch(store: MemorySessionStore, drain) -> None:
    recorder = Recorder()
    engine = _engine(store, recorder)

    await engine.connect("dock-3", "1234")
    await engine.connect("dock-3", "1234")
    await engine.reconnect()
    assert store.listener_count("DOCK-3") == 1

    seen = len(recorder.updates)
    await store.set("DOCK-3", {"updated": "2024-01-01T00:00:00+00:00"})
    await drain()
    assert len(recorder.updates) == seen + 1


async def test_switching_sessions_releases_previous_watch(store: MemorySessionStore) -> None:
    engine = _engine(store)
    await engine.connect("first", "1")
    await engine.connect("second", "2")

    assert store.listener_count("FIRST") == 0
    assert store.listener_count("SECOND") == 1


async def test_push_writes_full_map(store: MemorySessionStore) -> None:
    engine = _engine(store)
    await engine.connect("dock-4", "1234")
    before = store.peek("DOCK-4").updated

    inventory = {"P-1": InventoryItem(part="P-1", bin="215", qty=3, description="Seal")}
    assert await engine.push(inventory)

    document = store.peek("DOCK-4")
    assert parse_inventory_map(document.json) == inventory
    assert document.updated >= before
    assert not engine.state.syncing


async def test_push_is_noop_when_read_only(store: MemorySessionStore) -> None:
    await _engine(store).connect("dock-5", "1234")
    reader = _engine(store)
    await reader.connect("dock-5", "0000")

    assert not await reader.push({"P": InventoryItem(part="P")})
    assert reader.schedule_push({"P": InventoryItem(part="P")}) is None
    assert store.peek("DOCK-5").json == "{}"


async def test_push_is_noop_when_disconnected(store: MemorySessionStore) -> None:
    engine = _engine(store)
    assert not await engine.push({"P": InventoryItem(part="P")})


class VanishingStore(MemorySessionStore):
    async def update(self, session_id, fields) -> None:
        raise DocumentNotFound(session_id)


async def test_push_falls_back_to_merge_create() -> None:
    store = VanishingStore()
    engine = _engine(store)
    await engine.connect("dock-6", "1234")

    assert await engine.push({"P": InventoryItem(part="P", qty=1)})
    document = store.peek("DOCK-6")
    assert document.admin_pin == "1234"
    assert "P" in parse_inventory_map(document.json)


async def test_failed_push_reports_sync_failed(store: MemorySessionStore) -> None:
    recorder = Recorder()
    engine = _engine(store, recorder)
    await engine.connect("dock-8", "1234")
    store.writable = False

    assert not await engine.push({"P": InventoryItem(part="P")})
    assert engine.state.error == SYNC_FAILED_MESSAGE
    assert recorder.errors == [SYNC_FAILED_MESSAGE]
    assert not engine.state.syncing
    assert store.peek("DOCK-8").json == "{}"

    store.writable = True
    assert await engine.push({"P": InventoryItem(part="P")})
    assert engine.state.error is None


async def test_scheduled_pushes_apply_in_issue_order(store: MemorySessionStore) -> None:
    engine = _engine(store)
    await engine.connect("dock-9", "1234")

    for qty in range(1, 6):
        handle = engine.schedule_push({"P": InventoryItem(part="P", qty=qty)})
        assert isinstance(handle, asyncio.Task)
    await engine.wait_idle()

    assert parse_inventory_map(store.peek("DOCK-9").json)["P"].qty == 5


class DeniedWatchStore(MemorySessionStore):
    def watch(self, session_id, on_snapshot, on_error) -> Subscription:
        subscription = Subscription(session_id, on_snapshot, on_error)
        asyncio.get_running_loop().call_soon(
            subscription.fail, PermissionDenied("listen denied")
        )
        return subscription


async def test_watch_permission_error_moves_to_error_state() -> None:
    recorder = Recorder()
    engine = _engine(DeniedWatchStore(), recorder)

    state = await engine.connect("dock-10", "1234")

    assert state.phase is ConnectionState.ERROR
    assert state.error == ACCESS_DENIED_MESSAGE
    assert not engine.watching
    assert not await engine.push({"P": InventoryItem(part="P")})


class SilentStore(MemorySessionStore):
    def watch(self, session_id, on_snapshot, on_error) -> Subscription:
        return Subscription(session_id, on_snapshot, on_error)


async def test_connect_gives_up_waiting_for_first_snapshot() -> None:
    recorder = Recorder()
    engine = _engine(SilentStore(), recorder, connect_timeout=0.05)

    state = await engine.connect("dock-11", "1234")

    assert not state.connected
    assert state.error == CONNECT_TIMEOUT_MESSAGE
    assert recorder.errors == [CONNECT_TIMEOUT_MESSAGE]


async def test_connect_requires_session_id(store: MemorySessionStore) -> None:
    with pytest.raises(ValueError):
        await _engine(store).connect("   ", "1234")


async def test_reset_pin_keeps_admin_access(store: MemorySessionStore, drain) -> None:
    engine = _engine(store)
    await engine.connect("dock-12", "1234")

    assert await engine.reset_pin(" 5678 ")
    await drain()

    assert store.peek("DOCK-12").admin_pin == "5678"
    assert engine.state.phase is ConnectionState.CONNECTED_ADMIN

    old_pin = await _engine(store).connect("dock-12", "1234")
    assert old_pin.is_read_only


async def test_reset_pin_requires_admin(store: MemorySessionStore) -> None:
    await _engine(store).connect("dock-13", "1234")
    reader = _engine(store)
    await reader.connect("dock-13", "0000")

    with pytest.raises(ReadOnlyError):
        await reader.reset_pin("0000")
    assert store.peek("DOCK-13").admin_pin == "1234"


async def test_pushed_payload_uses_wire_keys(store: MemorySessionStore) -> None:
    engine = _engine(store)
    await engine.connect("dock-14", "1234")

    await engine.push({"P": InventoryItem(part="P", bin="NG1", qty=2, backorder=1)})

    record = json.loads(store.peek("DOCK-14").json)["P"]
    assert record["backorder"] == 1
    assert set(record) == {"part", "bin", "qty", "backorder", "description", "lastUpdated"}


class ObservedStore(MemorySessionStore):
    """Records the engine state seen while each update runs."""

    def __init__(self) -> None:
        super().__init__()
        self.state = None
        self.seen = []

    async def update(self, session_id, fields) -> None:
        self.seen.append((self.state.syncing, self.state.label))
        await super().update(session_id, fields)


async def test_syncing_is_held_for_the_duration_of_a_push() -> None:
    store = ObservedStore()
    engine = _engine(store)
    store.state = engine.state
    await engine.connect("dock-15", "1234")

    assert await engine.push({"P": InventoryItem(part="P")})
    assert store.seen[-1] == (True, "SYNCING")
    assert not engine.state.syncing

    store.writable = False
    assert not await engine.push({"P": InventoryItem(part="P", qty=2)})
    assert store.seen[-1][0] is True
    assert not engine.state.syncing


class SlowStore(MemorySessionStore):
    async def update(self, session_id, fields) -> None:
        await asyncio.sleep(0.02)
        await super().update(session_id, fields)


async def test_foreign_snapshots_apply_while_pushes_are_in_flight(drain) -> None:
    store = SlowStore()
    recorder = Recorder()
    engine = _engine(store, recorder)
    await engine.connect("dock-16", "1234")

    engine.schedule_push({"MINE": InventoryItem(part="MINE")})
    await store.set("DOCK-16", {"json": '{"THEIRS": {"part": "THEIRS"}}'})
    await drain()

    assert list(recorder.updates[-1][0]) == ["THEIRS"]
    await engine.wait_idle()


async def test_wait_idle_covers_pushes_from_other_threads() -> None:
    store = SlowStore()
    engine = _engine(store)
    await engine.connect("dock-17", "1234")

    handle = await asyncio.to_thread(
        engine.schedule_push, {"P": InventoryItem(part="P", qty=4)}
    )
    await engine.wait_idle()

    assert handle.done() and handle.result() is True
    assert parse_inventory_map(store.peek("DOCK-17").json)["P"].qty == 4
