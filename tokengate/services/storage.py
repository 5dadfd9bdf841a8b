"""
Persistent Store - Durable local key-value storage.

Values are opaque strings (flat JSON documents written by the services).
"""

from typing import Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from tokengate.db.models import KeyValueEntry, utc_now
from tokengate.exceptions import StorageError

logger = get_logger(__name__)


class PersistentStore(Protocol):
    """Durable local key-value storage."""

    async def get_string(self, key: str) -> str | None:
        """Return the value for key, or None when absent."""
        ...

    async def set_string(self, key: str, value: str) -> None:
        """Create or overwrite the value for key."""
        ...

    async def remove(self, key: str) -> None:
        """Delete key. Removing a missing key is a no-op."""
        ...

    async def compare_and_set(self, key: str, expected: str | None, value: str) -> bool:
        """
        Write value only if key still holds expected (None: key is absent).

        Returns False, without writing, when another writer got there first.
        """
        ...


class SqlPersistentStore:
    """
    PersistentStore backed by the kv_entries table.

    Every call runs in its own short transaction. Database failures are
    raised as StorageError.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store with a session factory."""
        self.session_factory = session_factory

    async def get_string(self, key: str) -> str | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(KeyValueEntry.value).where(KeyValueEntry.key == key)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("store_read_failed", key=key, error=str(exc))
            raise StorageError(f"read {key} failed: {exc}") from exc

    async def set_string(self, key: str, value: str) -> None:
        try:
            async with self.session_factory() as session:
                entry = await session.get(KeyValueEntry, key)
                if entry is None:
                    session.add(KeyValueEntry(key=key, value=value, updated_at=utc_now()))
                else:
                    entry.value = value
                    entry.updated_at = utc_now()
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("store_write_failed", key=key, error=str(exc))
            raise StorageError(f"write {key} failed: {exc}") from exc

    async def remove(self, key: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("store_delete_failed", key=key, error=str(exc))
            raise StorageError(f"delete {key} failed: {exc}") from exc

    async def compare_and_set(self, key: str, expected: str | None, value: str) -> bool:
        """
        Conditional write used by the quota ledger.

        An insert races on the primary key; an update only matches a row
        that still holds the expected value. Safe across processes sharing
        the database.
        """
        try:
            async with self.session_factory() as session:
                if expected is None:
                    session.add(KeyValueEntry(key=key, value=value, updated_at=utc_now()))
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        return False
                    return True

                result = await session.execute(
                    update(KeyValueEntry)
                    .where(KeyValueEntry.key == key, KeyValueEntry.value == expected)
                    .values(value=value, updated_at=utc_now())
                )
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            logger.error("store_cas_failed", key=key, error=str(exc))
            raise StorageError(f"conditional write {key} failed: {exc}") from exc
