# attendance_monitor/services/kv_store.py
from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from attendance_monitor.models.store_entry import StoreEntry

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class SqlKeyValueStore:
    """
    Durable key-value store on top of the `store_entries` table.

    Values must be JSON-serializable; a value that cannot be decoded on read
    is treated as missing.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[Any]:
        async with self._session_factory() as session:
            result = await session.execute(select(StoreEntry.value).where(StoreEntry.key == key))
            raw = result.scalar_one_or_none()

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable value stored under %r", key)
            return None

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        async with self._session_factory() as session:
            entry = await session.get(StoreEntry, key)
            if entry is None:
                session.add(StoreEntry(key=key, value=payload))
            else:
                entry.value = payload
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(StoreEntry).where(StoreEntry.key == key))
            await session.commit()


class InMemoryKeyValueStore:
    """Process-local store; values are deep-copied in and out."""

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
