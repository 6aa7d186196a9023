from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from inventory_sync.cache import LocalCache
from inventory_sync.engine import SyncEngine
from inventory_sync.manager import InventoryManager
from inventory_sync.models import CloudState
from inventory_sync.store import MemorySessionStore
from session_service.api import create_app
from session_service.config import Settings
from session_service.database import create_engine, create_session_factory, get_session
from session_service.management import init_database

AppFactory = Callable[..., Awaitable[FastAPI]]


@pytest.fixture()
async def make_app(tmp_path: Path) -> AsyncIterator[AppFactory]:
    engines = []

    async def _make(**overrides) -> FastAPI:
        db_path = tmp_path / f"sessions-{len(engines)}.db"
        test_settings = Settings(
            database_url=f"sqlite+aiosqlite:///{db_path}",
            environment="test",
            app_name="Test Session Service",
            **overrides,
        )
        engine = create_engine(test_settings)
        engines.append(engine)
        async_session = create_session_factory(engine)
        await init_database(engine)

        async def override_get_session() -> AsyncIterator[AsyncSession]:
            async with async_session() as session:
                yield session

        app = create_app(test_settings)
        app.dependency_overrides[get_session] = override_get_session
        return app

    yield _make

    for engine in engines:
        await engine.dispose()


@pytest.fixture()
async def app(make_app: AppFactory) -> FastAPI:
    return await make_app()


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture()
async def auth_headers(client: AsyncClient) -> dict:
    response = await client.post("/auth/anonymous")
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture()
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture()
def cache(tmp_path: Path):
    local_cache = LocalCache(tmp_path / "cache", debounce_seconds=0)
    yield local_cache
    local_cache.close()


@pytest.fixture()
def make_manager(tmp_path: Path, store: MemorySessionStore):
    caches = []

    def _make(name: str = "device", session_store=None) -> InventoryManager:
        local_cache = LocalCache(tmp_path / name, debounce_seconds=0)
        caches.append(local_cache)
        cloud = CloudState()
        engine = SyncEngine(session_store or store, cloud, connect_timeout=1.0)
        return InventoryManager(cache=local_cache, cloud=cloud, engine=engine)

    yield _make

    for local_cache in caches:
        local_cache.close()


@pytest.fixture()
def drain() -> Callable[[], Awaitable[None]]:
    """Let callbacks queued with ``call_soon`` run."""

    async def _drain(rounds: int = 5) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _drain
