"""TTL-bounded cache for expensive listing calls.

Wraps frequently repeated listings ("all projects", "repositories of project
X") so existence checks inside one process do not hammer the destination.

Semantics:
  - A live entry (age < ttl) is returned without calling the fetcher.
  - Otherwise the fetcher runs; success replaces the entry.
  - A failed refresh falls back to the last good value when one exists
    (marked ``stale``); with no prior value the failure propagates.
  - Refreshes of one key are single-flight. A reader arriving while a
    refresh is in flight gets the previous value instead of waiting.
  - ``invalidate`` drops an entry and discards the result of any refresh
    that started before the invalidation.

The cache is owned explicitly by its creator (the orchestrator) and is safe
for concurrent use by coroutines on one event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0

Fetcher = Callable[[], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """One cached value and when it was fetched (monotonic seconds)."""

    key: str
    value: Any
    fetched_at: float
    ttl: float

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_live(self, now: float) -> bool:
        return self.age(now) < self.ttl


@dataclass(frozen=True, slots=True)
class CachedValue:
    """Result of a cache read. ``stale`` is True when served past its ttl."""

    value: Any
    stale: bool
    fetched_at: float


class ListCache:
    """Process-wide, per-key TTL cache with stale fallback."""

    def __init__(
        self,
        *,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        fatal_errors: tuple[type[BaseException], ...] = (),
    ) -> None:
        if default_ttl < 0:
            raise ValueError('default_ttl must be >= 0')
        self._default_ttl = default_ttl
        self._clock = clock
        self._fatal_errors = fatal_errors
        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get(
        self,
        key: str,
        fetch_fn: Fetcher,
        ttl: float | None = None,
        force_refresh: bool = False,
    ) -> Any:
        """Return the value for ``key``, fetching it when missing or expired."""
        result = await self.read(key, fetch_fn, ttl=ttl, force_refresh=force_refresh)
        return result.value

    async def read(
        self,
        key: str,
        fetch_fn: Fetcher,
        *,
        ttl: float | None = None,
        force_refresh: bool = False,
    ) -> CachedValue:
        """Like ``get`` but reports whether the value was served stale."""
        ttl = self._default_ttl if ttl is None else ttl
        entry = self._entries.get(key)
        if not force_refresh and entry is not None and entry.is_live(self._clock()):
            return CachedValue(entry.value, False, entry.fetched_at)

        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked() and entry is not None and not force_refresh:
            return CachedValue(entry.value, True, entry.fetched_at)

        async with lock:
            entry = self._entries.get(key)
            if not force_refresh and entry is not None and entry.is_live(self._clock()):
                return CachedValue(entry.value, False, entry.fetched_at)
            return await self._refresh(key, fetch_fn, ttl, entry)

    async def _refresh(
        self,
        key: str,
        fetch_fn: Fetcher,
        ttl: float,
        previous: CacheEntry | None,
    ) -> CachedValue:
        generation = self._generations.get(key, 0)
        try:
            value = await fetch_fn()
        except Exception as exc:
            if isinstance(exc, self._fatal_errors):
                raise
            # An invalidation during the fetch means the previous value is known wrong.
            if previous is None or self._generations.get(key, 0) != generation:
                raise
            logger.warning(
                'Cache refresh failed for %s; serving stale value (age %.1fs)',
                key,
                previous.age(self._clock()),
                extra={'cache_key': key, 'error': str(exc)},
            )
            return CachedValue(previous.value, True, previous.fetched_at)

        now = self._clock()
        if self._generations.get(key, 0) == generation:
            self._entries[key] = CacheEntry(key=key, value=value, fetched_at=now, ttl=ttl)
        return CachedValue(value, False, now)

    def peek(self, key: str) -> CacheEntry | None:
        """Return the raw entry without fetching (live or not)."""
        return self._entries.get(key)

    def invalidate(self, key: str) -> None:
        """Drop ``key`` now; must follow any mutation of the cached collection."""
        self._generations[key] = self._generations.get(key, 0) + 1
        if self._entries.pop(key, None) is not None:
            logger.debug('Cache invalidated: %s', key, extra={'cache_key': key})

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._entries if k.startswith(prefix)]:
            self.invalidate(key)

    def clear(self) -> None:
        for key in list(self._entries):
            self.invalidate(key)
