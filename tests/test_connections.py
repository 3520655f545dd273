import inspect
from collections.abc import Awaitable
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from app.services.postgres import PostgresPool, translate_storage_errors
from app.tickets.errors import StorageUnavailableError


@pytest.mark.asyncio
async def test_postgres_pool(monkeypatch):
    connection_mock = AsyncMock()

    class DummyAcquire:
        async def __aenter__(self):
            return connection_mock

        async def __aexit__(self, exc_type, exc, tb):
            return False

    pool_mock = MagicMock()
    pool_mock.acquire.return_value = DummyAcquire()
    pool_mock.close = AsyncMock()
    created: list[dict] = []

    async def create_pool(**kwargs):
        created.append(kwargs)
        return pool_mock

    monkeypatch.setattr("app.services.postgres.asyncpg.create_pool", create_pool)

    pool = PostgresPool("postgresql://test", min_size=2, max_size=5)
    assert await pool.test_connection() is True
    assert await pool.get_pool() is pool_mock
    assert created == [{"dsn": "postgresql://test", "min_size": 2, "max_size": 5}]
    connection_mock.execute.assert_awaited_with("SELECT 1")
    await pool.close()
    pool_mock.close.assert_awaited()


def test_postgres_sync_helper(monkeypatch):
    async def fake_test(self) -> bool:
        return True

    captured: dict[str, object] = {}

    def wait_for_stub(coro: Awaitable, *, timeout: float):
        captured["coro"] = coro
        captured["timeout"] = timeout
        coro.close()
        return "wait-result"

    run_calls: list[object] = []

    def run_stub(arg: object):
        run_calls.append(arg)
        return True

    monkeypatch.setattr(PostgresPool, "test_connection", fake_test)
    monkeypatch.setattr("app.services.postgres.asyncio.wait_for", wait_for_stub)
    monkeypatch.setattr("app.services.postgres.asyncio.run", run_stub)

    pool = PostgresPool("postgresql://test")

    result = pool.test_connection_sync(timeout=0.1)
    assert result is True
    coro = captured.get("coro")
    assert inspect.iscoroutine(coro)
    assert captured["timeout"] == 0.1
    assert run_calls == ["wait-result"]


@pytest.mark.asyncio
async def test_translate_storage_errors():
    with pytest.raises(StorageUnavailableError) as exc:
        async with translate_storage_errors("Counter read"):
            raise asyncpg.InterfaceError("pool is closed")

    assert str(exc.value).startswith("Counter read failed")

    with pytest.raises(KeyError):
        async with translate_storage_errors("Counter read"):
            raise KeyError("value")
