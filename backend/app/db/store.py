"""
Durable key/value store used for conversations and memory entries.

The engine only needs get / set / delete on JSON-serializable values, keyed by
conversation identifier. PostgresStore keeps them in a single JSONB table;
MemoryStore is an in-process dict for tests and local runs.
"""
import copy
import json
from typing import Any, Protocol

from loguru import logger

from app.config import get_settings
from app.db import postgres


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        # Callers mutate what they load; hand out copies like a real store would
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class PostgresStore:
    async def get(self, key: str) -> Any | None:
        row = await postgres.fetch_one(
            "SELECT value FROM kv_store WHERE key = $1",
            key,
        )
        if not row:
            return None
        value = row["value"]
        # asyncpg returns JSONB as text unless a codec is registered
        return json.loads(value) if isinstance(value, str) else value

    async def set(self, key: str, value: Any) -> None:
        await postgres.execute(
            """INSERT INTO kv_store (key, value, updated_at)
               VALUES ($1, $2::jsonb, NOW())
               ON CONFLICT (key) DO UPDATE
               SET value = $2::jsonb, updated_at = NOW()""",
            key,
            json.dumps(value),
        )

    async def delete(self, key: str) -> None:
        await postgres.execute("DELETE FROM kv_store WHERE key = $1", key)


_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
    global _store
    if _store is None:
        backend = get_settings().store_backend
        _store = PostgresStore() if backend == "postgres" else MemoryStore()
        logger.debug("[store] using {} backend", backend)
    return _store


def set_store(store: KeyValueStore | None) -> None:
    global _store
    _store = store
