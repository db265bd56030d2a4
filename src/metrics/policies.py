"""Composable read policies around a single async fetch function.

Each policy is a callable ``(key, force_refresh) -> Awaitable[value]`` that
wraps an inner one of the same shape. MetricsCache stacks them as::

    Coalesce(TTL(Throttle(StaleOnError(loader))))

so a call first joins an in-flight request, then tries a fresh entry, then
the throttle window, and only then reaches the remote loader.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, Protocol, TypeVar

import structlog

from models.metrics import CacheEntry
from utils.error_handler import TransportFailure

logger = structlog.get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]


class Fetcher(Protocol[K, V]):
    def __call__(self, key: K, force_refresh: bool = False) -> Awaitable[V]: ...


class CacheState(Generic[K, V]):
    """Entries and last-attempt timestamps shared by the policies."""

    def __init__(self) -> None:
        self._entries: dict[K, CacheEntry[V]] = {}
        self._last_attempt: dict[K, float] = {}

    def entry(self, key: K) -> Optional[CacheEntry[V]]:
        return self._entries.get(key)

    def store(self, key: K, value: V, fetched_at: float) -> CacheEntry[V]:
        entry = CacheEntry(value=value, fetched_at=fetched_at)
        self._entries[key] = entry
        return entry

    def last_attempt(self, key: K) -> Optional[float]:
        return self._last_attempt.get(key)

    def mark_attempt(self, key: K, at: float) -> None:
        self._last_attempt[key] = at

    def clear(self) -> None:
        self._entries.clear()
        self._last_attempt.clear()


class StaleOnError(Generic[K, V]):
    """Store successful loads; on TransportFailure serve the previous entry if any."""

    def __init__(self, loader: Callable[[K], Awaitable[V]], state: CacheState[K, V], clock: Clock) -> None:
        self._loader = loader
        self._state = state
        self._clock = clock

    async def __call__(self, key: K, force_refresh: bool = False) -> V:
        try:
            value = await self._loader(key)
        except TransportFailure as e:
            # Read after the failure: a concurrent load may have landed meanwhile.
            previous = self._state.entry(key)
            if previous is None:
                raise
            logger.warning(
                "metrics_served_stale",
                key=str(key),
                age_seconds=round(previous.age(self._clock()), 3),
                error=e.details,
            )
            return previous.value
        self._state.store(key, value, self._clock())
        return value


class Throttle(Generic[K, V]):
    """At most one attempt per key per min_interval, unless forced.

    Within the window the existing entry is returned even if stale. With no
    entry at all the call goes through anyway.
    """

    def __init__(self, inner: Fetcher[K, V], state: CacheState[K, V], min_interval: float, clock: Clock) -> None:
        self._inner = inner
        self._state = state
        self._min_interval = min_interval
        self._clock = clock

    async def __call__(self, key: K, force_refresh: bool = False) -> V:
        now = self._clock()
        if not force_refresh:
            entry = self._state.entry(key)
            last = self._state.last_attempt(key)
            if entry is not None and last is not None and now - last < self._min_interval:
                logger.debug("metrics_throttled", key=str(key), since_last=round(now - last, 3))
                return entry.value
        self._state.mark_attempt(key, now)
        return await self._inner(key, force_refresh)


class TTL(Generic[K, V]):
    """Return the cached value while younger than ttl, unless forced."""

    def __init__(self, inner: Fetcher[K, V], state: CacheState[K, V], ttl: float, clock: Clock) -> None:
        self._inner = inner
        self._state = state
        self._ttl = ttl
        self._clock = clock

    async def __call__(self, key: K, force_refresh: bool = False) -> V:
        if not force_refresh:
            entry = self._state.entry(key)
            if entry is not None and entry.is_fresh(self._clock(), self._ttl):
                return entry.value
        return await self._inner(key, force_refresh)


class Coalesce(Generic[K, V]):
    """Concurrent non-forced callers for one key share the outstanding request.

    A forced call always starts a new request and becomes the one later
    callers join; the superseded request still completes. The in-flight
    marker is dropped by a done-callback, so exactly once per request.
    """

    def __init__(self, inner: Fetcher[K, V]) -> None:
        self._inner = inner
        self._in_flight: dict[K, asyncio.Future[V]] = {}

    def in_flight(self, key: K) -> bool:
        return key in self._in_flight

    def _clear(self, key: K, task: asyncio.Future[V]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def __call__(self, key: K, force_refresh: bool = False) -> V:
        if not force_refresh:
            pending = self._in_flight.get(key)
            if pending is not None:
                return await asyncio.shield(pending)

        task: asyncio.Future[Any] = asyncio.ensure_future(self._inner(key, force_refresh))
        self._in_flight[key] = task
        task.add_done_callback(lambda t, k=key: self._clear(k, t))
        return await asyncio.shield(task)
