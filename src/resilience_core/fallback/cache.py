"""Result cache collaborators used by the fallback orchestrator.

The orchestrator treats the store as opaque and tolerates its unavailability.
``InMemoryCacheStore`` is a process-local implementation; a distributed cache
only needs to satisfy ``CacheStore``.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Protocol


def _monotonic() -> float:
    return time.monotonic()


class CacheStore(Protocol):
    """Minimal async key/value store with per-entry TTL."""

    async def get(self, key: str) -> object | None:
        """Return the cached value for ``key`` or ``None`` on a miss."""

    async def set(self, key: str, value: object, ttl: float) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""


@dataclass(frozen=True, slots=True)
class _Entry:
    value: object
    expires_at: float


class InMemoryCacheStore:
    """TTL-expiring in-memory store.

    Expired entries are evicted when read and swept on every write, so keys
    that are never requested again do not accumulate.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> object | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if _monotonic() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    async def set(self, key: str, value: object, ttl: float) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        async with self._lock:
            now = _monotonic()
            self._sweep(now)
            self._entries[key] = _Entry(value=value, expires_at=now + ttl)

    def _sweep(self, now: float) -> None:
        # Caller must hold the store lock.
        expired = [
            key for key, entry in self._entries.items() if now >= entry.expires_at
        ]
        for key in expired:
            del self._entries[key]

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
