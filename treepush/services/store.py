"""Key-value stores with expiry used to persist sync job state between requests.

The job service only depends on the ``KeyValueStore`` protocol. Two
implementations are provided: an in-memory store (single process, lost on
restart) and an SQL store backed by the ``kv_store`` table.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from treepush.models.kv import KeyValueEntry

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """JSON-value store where every entry may carry a time-to-live."""

    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None if missing or expired."""
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a value, replacing any existing one."""
        ...

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """Atomically store a value only if the key is missing or expired.

        Returns True if the value was stored.
        """
        ...

    async def delete(self, *keys: str) -> None:
        """Remove keys. Missing keys are ignored."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """Reset the time-to-live of an existing key. Returns False if it is missing."""
        ...


class InMemoryKeyValueStore:
    """Store values in a process-local dict with automatic expiry.

    Thread-safety: safe under asyncio's single-threaded cooperative model.
    No method awaits between its read and its mutation, so ``set_if_absent``
    cannot interleave with another call.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}

    def _deadline(self, ttl_seconds: int | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    def _live(self, key: str) -> tuple[str, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        entry = self._live(key)
        return None if entry is None else json.loads(entry[0])

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self._entries[key] = (json.dumps(value), self._deadline(ttl_seconds))

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        if self._live(key) is not None:
            return False
        self._entries[key] = (json.dumps(value), self._deadline(ttl_seconds))
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._entries[key] = (entry[0], self._deadline(ttl_seconds))
        return True

    def cleanup(self) -> None:
        """Remove expired entries."""
        for key in list(self._entries):
            self._live(key)


class SqlKeyValueStore:
    """Store values as JSON text in the ``kv_store`` table.

    ``set_if_absent`` relies on the primary key constraint, so two concurrent
    callers can never both win.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _deadline(self, ttl_seconds: int | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    def _expired(self, entry: KeyValueEntry) -> bool:
        return entry.expires_at is not None and entry.expires_at <= self._clock()

    async def get(self, key: str) -> Any | None:
        async with self._session_factory() as session:
            entry = await session.get(KeyValueEntry, key)
            if entry is None:
                return None
            if self._expired(entry):
                await session.delete(entry)
                await session.commit()
                return None
            return json.loads(entry.value)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        async with self._session_factory() as session:
            await session.merge(
                KeyValueEntry(
                    key=key,
                    value=json.dumps(value),
                    expires_at=self._deadline(ttl_seconds),
                )
            )
            await session.commit()

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        async with self._session_factory() as session:
            await session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.key == key,
                    KeyValueEntry.expires_at.is_not(None),
                    KeyValueEntry.expires_at <= self._clock(),
                )
            )
            await session.commit()

            session.add(
                KeyValueEntry(
                    key=key,
                    value=json.dumps(value),
                    expires_at=self._deadline(ttl_seconds),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        async with self._session_factory() as session:
            await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key.in_(keys)))
            await session.commit()

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(KeyValueEntry)
                .where(
                    KeyValueEntry.key == key,
                    or_(
                        KeyValueEntry.expires_at.is_(None),
                        KeyValueEntry.expires_at > self._clock(),
                    ),
                )
                .values(expires_at=self._deadline(ttl_seconds))
            )
            await session.commit()
            return bool(result.rowcount)

    async def cleanup(self) -> int:
        """Delete expired rows. Returns the number of rows removed."""
        async with self._session_factory() as session:
            stmt = select(KeyValueEntry.key).where(
                KeyValueEntry.expires_at.is_not(None),
                KeyValueEntry.expires_at <= self._clock(),
            )
            expired = list((await session.execute(stmt)).scalars().all())
            if expired:
                await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key.in_(expired)))
                await session.commit()
                logger.info("Removed %d expired job state entries", len(expired))
            return len(expired)
