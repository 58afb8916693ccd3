"""Short-lived read-through cache in front of the identity store."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from .clock import Clock, SystemClock
from .logging import get_logger


logger = get_logger("agency.identity_cache")

AGGREGATE_PREFIXES: tuple[str, ...] = ("find_all", "stats", "find_by_role")


def make_key(operation: str, identifier: Any = "") -> str:
    return f"{operation}:{identifier}"


@dataclass(slots=True)
class CacheEntry:
    value: Any
    inserted_at: datetime


class IdentityCache:
    """In-memory TTL cache keyed by ``"<operation>:<identifier>"``.

    Entries older than ``ttl_seconds`` are ignored on read. When ``capacity``
    entries are stored the oldest insertion is evicted first.
    """

    def __init__(
        self,
        *,
        ttl_seconds: int = 300,
        capacity: int = 1000,
        clock: Clock | None = None,
    ) -> None:
        if ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._capacity = capacity
        self._clock = clock or SystemClock()
        self._entries: dict[str, CacheEntry] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    @property
    def generation(self) -> int:
        """Counter bumped by every invalidation; pass it back to :meth:`set`."""

        return self._generation

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[str]:
        return list(self._entries)

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock.now() - entry.inserted_at < self._ttl

    def _drop(self, key: str) -> None:
        self._entries.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._is_fresh(entry):
                self._drop(key)
                return None
            return entry.value

    async def set(self, key: str, value: Any, *, generation: int | None = None) -> bool:
        """Store ``value`` unless an invalidation ran since ``generation`` was read.

        Returns whether the value was stored.
        """

        async with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("identity_cache.stale_load_dropped", key=key)
                return False
            if key not in self._entries and len(self._entries) >= self._capacity:
                oldest = min(self._entries, key=lambda item: self._entries[item].inserted_at)
                self._drop(oldest)
            self._drop(key)
            self._entries[key] = CacheEntry(value=value, inserted_at=self._clock.now())
            return True

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key`` or store what ``loader`` returns.

        ``None`` results are not cached, nor are results of a load that overlapped
        an invalidation.
        """

        cached = await self.get(key)
        if cached is not None:
            return cached
        generation = self._generation
        value = await loader()
        if value is not None:
            await self.set(key, value, generation=generation)
        return value

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._generation += 1
            self._drop(key)

    async def invalidate(self, user_id: int | str | None = None, *, email: str | None = None) -> int:
        """Remove every entry referencing ``user_id``/``email`` plus aggregate views.

        List and statistics entries are dropped on every call because any
        identity mutation may change them.
        """

        identifiers: set[str] = set()
        if user_id is not None:
            identifiers.add(str(user_id))
        if email:
            identifiers.add(email.strip().lower())

        async with self._lock:
            self._generation += 1
            doomed = []
            for key in self._entries:
                operation, _, identifier = key.partition(":")
                if operation in AGGREGATE_PREFIXES or identifier in identifiers:
                    doomed.append(key)
            for key in doomed:
                self._drop(key)

        if doomed:
            logger.debug("identity_cache.invalidated", user_id=user_id, removed=len(doomed))
        return len(doomed)

    async def clear(self) -> int:
        async with self._lock:
            self._generation += 1
            removed = len(self._entries)
            for key in list(self._entries):
                self._drop(key)
        logger.info("identity_cache.cleared", removed=removed)
        return removed

    def schedule_eviction(self, key: str, delay_seconds: float | None = None) -> None:
        """Drop ``key`` after ``delay_seconds`` (the TTL by default) on the running loop."""

        delay = self.ttl_seconds if delay_seconds is None else delay_seconds
        loop = asyncio.get_running_loop()
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()

        def _expire() -> None:
            self._timers.pop(key, None)
            self._entries.pop(key, None)

        self._timers[key] = loop.call_later(delay, _expire)

    def stats(self) -> dict[str, int]:
        fresh = sum(1 for entry in self._entries.values() if self._is_fresh(entry))
        return {
            "size": len(self._entries),
            "fresh": fresh,
            "capacity": self._capacity,
            "ttlSeconds": self.ttl_seconds,
        }


__all__ = ["AGGREGATE_PREFIXES", "CacheEntry", "IdentityCache", "make_key"]
