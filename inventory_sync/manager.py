"""Inventory mutation API consumed by the UI, import and audit collaborators."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from threading import RLock
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .cache import LocalCache
from .engine import PushHandle, SyncEngine
from .errors import ReadOnlyError
from .models import (
    AuditEntry,
    CloudState,
    InventoryItem,
    InventoryMap,
    InventoryStats,
    utcnow,
    normalize_code,
)
from .zones import ZoneGroup, bins_for_zones, build_zone_hierarchy, select_audit_entries


@dataclass
class InventoryManager:
    """Owns the in-memory inventory map.

    Local mutations and remote snapshots go through the same locked update
    path, so readers always see one consistent map. Every change is written to
    the local cache (debounced) and, when connected as admin, pushed to the
    session.
    """

    cache: LocalCache
    cloud: CloudState = field(default_factory=CloudState)
    engine: Optional[SyncEngine] = None
    low_stock_threshold: int = 5
    last_push: Optional[PushHandle] = field(default=None, init=False)
    _items: InventoryMap = field(default_factory=dict, init=False)
    _lock: RLock = field(default_factory=RLock, init=False)

    def __post_init__(self) -> None:
        with self._lock:
            self._items = self.cache.load_inventory()
        if self.engine is not None:
            self.attach(self.engine)

    def attach(self, engine: SyncEngine) -> None:
        """Route the engine's snapshots into this manager."""

        self.engine = engine
        engine.state = self.cloud
        engine.on_update = self.apply_snapshot

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read_all(self) -> InventoryMap:
        with self._lock:
            return {part: replace(item) for part, item in self._items.items()}

    def get_item(self, part: str) -> InventoryItem:
        key = normalize_code(part)
        with self._lock:
            if key not in self._items:
                raise KeyError(f"Item '{key}' not found")
            return replace(self._items[key])

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def search(self, query: str = "") -> List[InventoryItem]:
        """Items whose part, bin or description contains ``query``."""

        needle = normalize_code(query)
        items = list(self.read_all().values())
        if not needle:
            return sorted(items, key=lambda item: item.part)
        return [
            item
            for item in items
            if needle in item.part
            or needle in item.bin
            or (item.description and needle in item.description.upper())
        ]

    def statistics(self) -> InventoryStats:
        items = list(self.read_all().values())
        return InventoryStats(
            total_items=len(items),
            total_qty=sum(item.qty for item in items),
            total_backorder=sum(item.backorder for item in items),
            low_stock=sum(1 for item in items if item.qty <= self.low_stock_threshold),
        )

    def suspicious_items(self) -> List[InventoryItem]:
        """Items with negative quantity or backorder, for operator review."""

        return sorted(
            (item for item in self.read_all().values() if item.is_suspicious),
            key=lambda item: item.part,
        )

    def zone_hierarchy(self) -> Dict[str, ZoneGroup]:
        return build_zone_hierarchy(self.read_all().values())

    def audit_entries(self, zones: Iterable[str]) -> List[AuditEntry]:
        """Audit list for the selected group or subgroup keys."""

        items = self.read_all()
        bins = bins_for_zones(build_zone_hierarchy(items.values()), zones)
        return select_audit_entries(items.values(), bins)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _ensure_writable(self) -> None:
        # Caller holds self._lock.
        if self.cloud.is_read_only:
            raise ReadOnlyError()

    def upsert(self, item: Union[InventoryItem, Mapping[str, Any]]) -> InventoryItem:
        if isinstance(item, InventoryItem):
            candidate = replace(item, part=normalize_code(item.part), bin=normalize_code(item.bin))
        else:
            candidate = InventoryItem.from_record(item)
        if not candidate.part:
            raise ValueError("Part number cannot be empty")
        candidate.qty = int(candidate.qty)
        candidate.backorder = int(candidate.backorder or 0)
        candidate.description = (candidate.description or "").strip()
        candidate.last_updated = utcnow()
        with self._lock:
            self._ensure_writable()
            self._items[candidate.part] = candidate
            self._commit_locked()
        return replace(candidate)

    def remove(self, part: str) -> bool:
        key = normalize_code(part)
        with self._lock:
            self._ensure_writable()
            removed = self._items.pop(key, None) is not None
            self._commit_locked()
        return removed

    def bulk_replace(self, inventory: Mapping[str, InventoryItem]) -> None:
        """Swap in a complete new map, e.g. from an import."""

        fresh: InventoryMap = {}
        for key, item in inventory.items():
            part = normalize_code(item.part or key)
            if not part:
                raise ValueError("Part number cannot be empty")
            fresh[part] = replace(item, part=part, bin=normalize_code(item.bin))
        with self._lock:
            self._ensure_writable()
            self._items = fresh
            self._commit_locked()

    def apply_audit(self, audited: Iterable[AuditEntry]) -> int:
        """Merge counted items back; only entries marked ``done`` are applied.

        Existing records keep fields the audit does not capture, such as the
        description. Returns the number of records written.
        """

        applied = 0
        with self._lock:
            self._ensure_writable()
            for entry in audited:
                if not entry.done:
                    continue
                part = normalize_code(entry.part)
                if not part:
                    continue
                current = self._items.get(part) or InventoryItem(part=part)
                self._items[part] = replace(
                    current,
                    bin=normalize_code(entry.bin),
                    qty=int(entry.qty),
                    backorder=int(entry.backorder or 0),
                    last_updated=utcnow(),
                )
                applied += 1
            self._commit_locked()
        return applied

    def apply_snapshot(self, inventory: InventoryMap, read_only: bool) -> None:
        """Engine callback: the remote snapshot replaces the local map."""

        with self._lock:
            self._items = {part: replace(item) for part, item in inventory.items()}
            self.cache.save_inventory(self._items)

    def _commit_locked(self) -> None:
        self.cache.save_inventory(self._items)
        if self.engine is not None and self.engine.is_admin:
            self.last_push = self.engine.schedule_push(dict(self._items))

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def _require_engine(self) -> SyncEngine:
        if self.engine is None:
            raise RuntimeError("No sync engine attached")
        return self.engine

    async def connect(self, session_id: str, pin: str = "") -> CloudState:
        engine = self._require_engine()
        state = await engine.connect(session_id, pin)
        self.cache.remember_session(state.session_id, (pin or "").strip())
        return state

    async def resume(self) -> Optional[CloudState]:
        """Reconnect to the session remembered from the previous run."""

        remembered = self.cache.last_session()
        if remembered is None or self.engine is None:
            return None
        session_id, pin = remembered
        return await self.connect(session_id, pin)

    async def reconnect(self) -> CloudState:
        return await self._require_engine().reconnect()

    async def reset_pin(self, new_pin: str) -> bool:
        engine = self._require_engine()
        updated = await engine.reset_pin(new_pin)
        if updated:
            self.cache.remember_session(self.cloud.session_id, (new_pin or "").strip())
        return updated

    def disconnect(self, *, forget: bool = False) -> None:
        if self.engine is not None:
            self.engine.disconnect()
        if forget:
            self.cache.forget_session()

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.wait_idle()
            self.engine.disconnect()
            await self.engine.store.close()
        self.cache.close()


__all__ = ["InventoryManager"]
