"""Data model shared by the cache, the sync engine and the mutation API."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import json
import logging

from .errors import CorruptSnapshot

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _serialize_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Current UTC time as the ISO-8601 string stored in ``updated``."""

    return _serialize_timestamp(utcnow()) or ""


def _coerce_int(value: Any) -> int:
    """Convert loosely typed quantity inputs to ``int``; unreadable values become 0."""

    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    if text == "":
        return 0
    try:
        return int(text)
    except ValueError:
        try:
            return int(float(text))
        except ValueError:
            return 0


def normalize_code(value: Any) -> str:
    """Upper-case and trim a part number or bin code."""

    if value is None:
        return ""
    return str(value).strip().upper()


def normalize_session_id(value: str) -> str:
    """Turn a human-chosen session name into the remote document key."""

    safe = str(value or "").strip().replace("/", "_").replace(".", "_")
    return safe.upper()


@dataclass
class InventoryItem:
    """A single part stored in one bin."""

    part: str
    bin: str = ""
    qty: int = 0
    backorder: int = 0
    description: str = ""
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "part": self.part,
            "bin": self.bin,
            "qty": self.qty,
            "backorder": self.backorder,
            "description": self.description,
            "lastUpdated": _serialize_timestamp(self.last_updated),
        }

    @property
    def is_suspicious(self) -> bool:
        return self.qty < 0 or self.backorder < 0

    @classmethod
    def from_record(cls, record: Mapping[str, Any], *, key: str = "") -> "InventoryItem":
        part = normalize_code(record.get("part")) or normalize_code(key)
        if not part:
            raise ValueError("Inventory record missing part number")
        backorder = record.get("backorder")
        if backorder is None:
            backorder = record.get("bo")
        description = record.get("description")
        return cls(
            part=part,
            bin=normalize_code(record.get("bin")),
            qty=_coerce_int(record.get("qty")),
            backorder=_coerce_int(backorder),
            description="" if description is None else str(description).strip(),
            last_updated=_parse_timestamp(record.get("lastUpdated")),
        )


InventoryMap = Dict[str, InventoryItem]


def parse_inventory_map(raw: str) -> InventoryMap:
    """Decode a serialized inventory map.

    Raises :class:`CorruptSnapshot` when the payload is not a JSON object.
    Individual records that cannot be read are skipped.
    """

    try:
        payload = json.loads(raw or "{}")
    except (TypeError, json.JSONDecodeError) as exc:
        raise CorruptSnapshot(f"Inventory payload is not valid JSON: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise CorruptSnapshot("Inventory payload must be a JSON object")
    inventory: InventoryMap = {}
    for key, record in payload.items():
        if not isinstance(record, dict):
            logger.warning("Skipping malformed inventory record %r", key)
            continue
        try:
            item = InventoryItem.from_record(record, key=key)
        except ValueError:
            logger.warning("Skipping inventory record without part number %r", key)
            continue
        inventory[item.part] = item
    return inventory


def dump_inventory_map(inventory: Mapping[str, InventoryItem]) -> str:
    return json.dumps(
        {part: item.to_dict() for part, item in inventory.items()},
        ensure_ascii=False,
        separators=(",", ":"),
    )


@dataclass
class AuditEntry:
    """Counted result for one part, handed back by the audit workflow."""

    part: str
    bin: str = ""
    qty: int = 0
    backorder: int = 0
    done: bool = False

    @classmethod
    def from_item(cls, item: InventoryItem) -> "AuditEntry":
        return cls(part=item.part, bin=item.bin, qty=item.qty, backorder=item.backorder)


@dataclass
class SessionDocument:
    """The remote document backing a session."""

    session_id: str
    admin_pin: Optional[str] = None
    json: Optional[str] = None
    updated: Optional[str] = None

    @property
    def is_claimed(self) -> bool:
        return bool(self.admin_pin)

    def to_fields(self) -> Dict[str, Any]:
        return {"json": self.json, "adminPin": self.admin_pin, "updated": self.updated}

    @classmethod
    def from_fields(cls, session_id: str, fields: Mapping[str, Any]) -> "SessionDocument":
        return cls(
            session_id=session_id,
            admin_pin=fields.get("adminPin"),
            json=fields.get("json"),
            updated=fields.get("updated"),
        )


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED_ADMIN = "connected_admin"
    CONNECTED_READONLY = "connected_readonly"
    ERROR = "error"


@dataclass
class CloudState:
    """Process-wide view of the sync engine, mutated only by the engine."""

    connected: bool = False
    session_id: str = ""
    syncing: bool = False
    error: Optional[str] = None
    is_read_only: bool = False
    phase: ConnectionState = ConnectionState.DISCONNECTED

    @property
    def label(self) -> str:
        if not self.connected:
            return "OFFLINE"
        if self.error:
            return "ERROR"
        if self.syncing:
            return "SYNCING"
        if self.is_read_only:
            return "READ ONLY"
        return "ONLINE"


@dataclass
class InventoryStats:
    total_items: int = 0
    total_qty: int = 0
    total_backorder: int = 0
    low_stock: int = 0


__all__ = [
    "AuditEntry",
    "CloudState",
    "ConnectionState",
    "InventoryItem",
    "InventoryMap",
    "InventoryStats",
    "SessionDocument",
    "dump_inventory_map",
    "normalize_code",
    "normalize_session_id",
    "now_iso",
    "parse_inventory_map",
]
