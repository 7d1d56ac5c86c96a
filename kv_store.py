"""
kv_store.py: Expiring key-value storage for OAuth state.

Every stateful component (clients, authorization codes, correlation
records, user credentials) sits on top of the KeyValueStore protocol.
Each key is addressed independently and may carry its own TTL. Expired
entries are evicted lazily on access, so a read after expiry looks
exactly like a read after delete.

MemoryKeyValueStore is the in-process implementation used by the server
and the tests. It guards mutations with an asyncio.Lock so that take()
hands a value to at most one caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

logger = logging.getLogger("hatena-kv")


class KeyValueStore(Protocol):
    async def put(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    async def get(self, key: str) -> Any | None: ...

    async def take(self, key: str) -> Any | None: ...

    async def delete(self, key: str) -> None: ...


@dataclass
class _Entry:
    value: Any
    expires_at: float | None = None


class MemoryKeyValueStore:
    """In-memory KeyValueStore with per-entry expiry.

    ``clock`` returns the current Unix time in seconds; tests pass a fake
    one to move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            logger.debug("evicted expired key %s", key)
            return None
        return entry

    async def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = None
        if ttl is not None:
            expires_at = self._clock() + max(0.0, ttl)
        async with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def take(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            del self._entries[key]
            return entry.value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
