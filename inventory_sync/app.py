"""Wiring of the cache, session store, sync engine and inventory manager."""
from __future__ import annotations

from typing import Optional

from .cache import LocalCache
from .config import Settings, get_settings
from .engine import ErrorHandler, SyncEngine
from .http_store import HttpSessionStore
from .manager import InventoryManager
from .models import CloudState
from .store import SessionStore


def create_store(settings: Settings) -> HttpSessionStore:
    return HttpSessionStore(
        settings.service_url,
        timeout=settings.request_timeout,
        auth_retries=settings.auth_retries,
        auth_retry_delay=settings.auth_retry_delay,
        auth_settle_delay=settings.auth_settle_delay,
        poll_interval=settings.poll_interval,
    )


def create_manager(
    settings: Optional[Settings] = None,
    *,
    store: Optional[SessionStore] = None,
    cache: Optional[LocalCache] = None,
    on_error: Optional[ErrorHandler] = None,
) -> InventoryManager:
    """Build an :class:`InventoryManager` with its sync engine attached.

    The manager loads the cached inventory immediately and stays fully usable
    offline; call :meth:`InventoryManager.connect` or ``resume`` to join a
    session.
    """

    settings = settings or get_settings()
    cloud = CloudState()
    if cache is None:
        cache = LocalCache(settings.cache_dir, debounce_seconds=settings.cache_debounce_seconds)
    if store is None:
        store = create_store(settings)
    engine = SyncEngine(
        store,
        cloud,
        on_error=on_error,
        connect_timeout=settings.connect_timeout,
    )
    return InventoryManager(
        cache=cache,
        cloud=cloud,
        engine=engine,
        low_stock_threshold=settings.low_stock_threshold,
    )


__all__ = ["create_manager", "create_store"]
