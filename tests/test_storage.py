"""
Tests for SqlPersistentStore against an in-memory SQLite database.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tokengate.db.models import Base
from tokengate.exceptions import StorageError
from tokengate.services.storage import SqlPersistentStore


@pytest.fixture
async def session_factory():
    """Fresh schema on a single shared in-memory connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlPersistentStore:
    return SqlPersistentStore(session_factory)


class TestSqlPersistentStore:
    """Tests for get_string(), set_string() and remove()."""

    async def test_missing_key(self, sql_store):
        assert await sql_store.get_string("quota:gemini") is None

    async def test_set_then_get(self, sql_store):
        await sql_store.set_string("quota:gemini", '{"requests": 1}')
        assert await sql_store.get_string("quota:gemini") == '{"requests": 1}'

    async def test_overwrite(self, sql_store):
        await sql_store.set_string("k", "first")
        await sql_store.set_string("k", "second")
        assert await sql_store.get_string("k") == "second"

    async def test_remove(self, sql_store):
        await sql_store.set_string("k", "v")
        await sql_store.remove("k")
        assert await sql_store.get_string("k") is None

    async def test_remove_missing_is_noop(self, sql_store):
        await sql_store.remove("never-written")

    async def test_keys_are_independent(self, sql_store):
        await sql_store.set_string("ai_tokens:a:gemini", "a")
        await sql_store.set_string("ai_tokens:b:gemini", "b")
        assert await sql_store.get_string("ai_tokens:a:gemini") == "a"
        assert await sql_store.get_string("ai_tokens:b:gemini") == "b"

    async def test_missing_table_is_storage_error(self):
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        store = SqlPersistentStore(async_sessionmaker(engine, class_=AsyncSession))
        try:
            with pytest.raises(StorageError):
                await store.get_string("k")
            with pytest.raises(StorageError):
                await store.set_string("k", "v")
        finally:
            await engine.dispose()


class TestCompareAndSet:
    """Tests for compare_and_set()."""

    async def test_insert_when_absent(self, sql_store):
        assert await sql_store.compare_and_set("quota:gemini", None, "first") is True
        assert await sql_store.get_string("quota:gemini") == "first"

    async def test_insert_loses_to_existing_row(self, sql_store):
        await sql_store.set_string("quota:gemini", "theirs")
        assert await sql_store.compare_and_set("quota:gemini", None, "mine") is False
        assert await sql_store.get_string("quota:gemini") == "theirs"

    async def test_update_with_stale_expected(self, sql_store):
        await sql_store.set_string("quota:gemini", "v2")
        assert await sql_store.compare_and_set("quota:gemini", "v1", "v3") is False
        assert await sql_store.get_string("quota:gemini") == "v2"

    async def test_update_with_current_expected(self, sql_store):
        await sql_store.set_string("quota:gemini", "v1")
        assert await sql_store.compare_and_set("quota:gemini", "v1", "v2") is True
        assert await sql_store.get_string("quota:gemini") == "v2"

    async def test_expected_value_for_missing_key(self, sql_store):
        assert await sql_store.compare_and_set("quota:gemini", "v1", "v2") is False
        assert await sql_store.get_string("quota:gemini") is None
