"""
Per-source alert cache with explicit TTLs and invalidation.

Each source's normalized alerts are kept for that source's TTL (short for
live EDR/uptime data, minutes for backup summaries). Anything that could
change a source's data (mitigation dispatch, incident status or verdict
updates) calls invalidate(source) so the next read refetches.

Only successful fetches are cached; a failed fetch is retried on the next
read rather than pinned for a whole TTL.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Generic, Optional, TypeVar

from src.models.alert import AlertSource

if TYPE_CHECKING:
    from src.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    stored_at: float


class SourceCache(Generic[T]):
    def __init__(
        self,
        ttl_seconds: Optional[Mapping[AlertSource, float]] = None,
        default_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttls = dict(ttl_seconds or {})
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: dict[AlertSource, _Entry[T]] = {}
        self._locks: dict[AlertSource, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SourceCache[T]":
        return cls(
            ttl_seconds=settings.cache_ttl_seconds,
            default_ttl_seconds=settings.default_cache_ttl_seconds,
        )

    def ttl_for(self, source: AlertSource) -> float:
        return self._ttls.get(source, self._default_ttl)

    def peek(self, source: AlertSource) -> Optional[T]:
        """The cached value if still fresh, without fetching."""
        entry = self._entries.get(source)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_for(source):
            return None
        return entry.value

    async def get_or_fetch(self, source: AlertSource, fetch: Callable[[], Awaitable[T]]) -> T:
        """Return the fresh cached value, or await *fetch* and cache its result.

        Concurrent callers for the same source share one fetch. Exceptions
        from *fetch* propagate and leave the cache untouched.
        """
        lock = self._locks.setdefault(source, asyncio.Lock())
        async with lock:
            cached = self.peek(source)
            if cached is not None:
                return cached

            value = await fetch()
            self._entries[source] = _Entry(value=value, stored_at=self._clock())
            logger.debug("cache.stored", extra={"source": source.value, "ttl": self.ttl_for(source)})
            return value

    def invalidate(self, source: AlertSource) -> None:
        if self._entries.pop(source, None) is not None:
            logger.debug("cache.invalidated", extra={"source": source.value})

    def invalidate_all(self) -> None:
        self._entries.clear()
