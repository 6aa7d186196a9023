"""Inventory sync package."""
from __future__ import annotations

from .app import create_manager
from .errors import (
    CorruptSnapshot,
    NetworkUnavailable,
    PermissionDenied,
    ReadOnlyError,
    SyncFailed,
)
from .manager import InventoryManager
from .models import AuditEntry, CloudState, ConnectionState, InventoryItem
from .zones import classify_bin

__all__ = [
    "AuditEntry",
    "CloudState",
    "ConnectionState",
    "CorruptSnapshot",
    "InventoryItem",
    "InventoryManager",
    "NetworkUnavailable",
    "PermissionDenied",
    "ReadOnlyError",
    "SyncFailed",
    "classify_bin",
    "create_manager",
]
