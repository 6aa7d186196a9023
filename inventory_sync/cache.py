"""Durable local cache for the inventory snapshot and the last session."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock, Timer
from typing import Callable, Optional, Tuple
import atexit
import json
import logging
import re

from .errors import CorruptSnapshot
from .models import InventoryMap, dump_inventory_map, parse_inventory_map

logger = logging.getLogger(__name__)

INVENTORY_KEY = "inventory_v1"
SESSION_KEY = "session"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass
class BlobStore:
    """Key to string store backed by one file per key."""

    root: Path
    _lock: RLock = field(default_factory=RLock, init=False)

    def __post_init__(self) -> None:
        self.root = Path(self.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        safe = _UNSAFE_KEY_CHARS.sub("_", key).strip("._") or "blob"
        return self.root / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

    def put(self, key: str, value: str) -> None:
        path = self._path_for(key)
        with self._lock:
            temp_path = path.with_suffix(".tmp")
            temp_path.write_text(value, encoding="utf-8")
            temp_path.replace(path)

    def delete(self, key: str) -> None:
        with self._lock:
            self._path_for(key).unlink(missing_ok=True)


class DebouncedWriter:
    """Coalesce rapid writes into one call made ``delay`` seconds after the last change."""

    def __init__(self, write: Callable[[str], None], delay: float) -> None:
        self._write = write
        self._delay = delay
        self._lock = RLock()
        self._pending: Optional[str] = None
        self._dirty = False
        self._timer: Optional[Timer] = None
        self._closed = False
        atexit.register(self.flush)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def schedule(self, value: str) -> None:
        with self._lock:
            self._pending = value
            self._dirty = True
            if self._closed or self._delay <= 0:
                self._flush_locked()
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = Timer(self._delay, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._flush_locked()

    def close(self) -> None:
        self.flush()
        with self._lock:
            self._closed = True
        atexit.unregister(self.flush)

    def _flush_locked(self) -> None:
        if not self._dirty or self._pending is None:
            return
        self._write(self._pending)
        self._pending = None
        self._dirty = False


class LocalCache:
    """Inventory snapshot and session credentials kept on the local disk."""

    def __init__(self, root: Path, *, debounce_seconds: float = 0.75) -> None:
        self.blobs = BlobStore(Path(root))
        self._writer = DebouncedWriter(self._write_inventory, debounce_seconds)

    def load_inventory(self) -> InventoryMap:
        raw = self.blobs.get(INVENTORY_KEY)
        if raw is None:
            return {}
        try:
            return parse_inventory_map(raw)
        except CorruptSnapshot:
            logger.warning("Local inventory cache is unreadable; starting empty")
            return {}

    def save_inventory(self, inventory: InventoryMap) -> None:
        self._writer.schedule(dump_inventory_map(inventory))

    def _write_inventory(self, payload: str) -> None:
        self.blobs.put(INVENTORY_KEY, payload)
        logger.debug("Wrote inventory cache (%d bytes)", len(payload))

    @property
    def pending(self) -> bool:
        return self._writer.dirty

    def remember_session(self, session_id: str, pin: str) -> None:
        self.blobs.put(SESSION_KEY, json.dumps({"sessionId": session_id, "pin": pin}))

    def last_session(self) -> Optional[Tuple[str, str]]:
        raw = self.blobs.get(SESSION_KEY)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        session_id = str(payload.get("sessionId") or "").strip()
        if not session_id:
            return None
        return session_id, str(payload.get("pin") or "")

    def forget_session(self) -> None:
        self.blobs.delete(SESSION_KEY)

    def flush(self) -> None:
        self._writer.flush()

    def close(self) -> None:
        self._writer.close()


__all__ = ["BlobStore", "DebouncedWriter", "LocalCache", "INVENTORY_KEY", "SESSION_KEY"]
