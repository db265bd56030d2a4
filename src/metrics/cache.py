"""Process-wide cache for analytics reads.

One MetricsCache is shared by every view in the process. Views come and go
(mount, unmount, remount) while the cache, its entries and its auto-refresh
timers stay put, so a remount inside the TTL costs no remote call.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from config.loader import get_metrics_config
from metrics.client import AnalyticsClient
from metrics.policies import TTL, CacheState, Clock, Coalesce, StaleOnError, Throttle
from models.metrics import CacheEntry, DashboardData, MetricsSummary, ProcessPage
from utils.error_handler import TransportFailure

logger = structlog.get_logger(__name__)

Listener = Callable[["MetricsKey", Any], None]


@dataclass(frozen=True)
class MetricsKey:
    """Identifies one cached read: the operation plus its parameters."""
    operation: str
    user_id: str
    limit: Optional[int] = None
    last_evaluated_key: Optional[str] = None

    @classmethod
    def summary(cls, user_id: str) -> "MetricsKey":
        return cls("summary", user_id)

    @classmethod
    def processes(cls, user_id: str, limit: int, last_evaluated_key: Optional[str] = None) -> "MetricsKey":
        return cls("processes", user_id, limit, last_evaluated_key)

    def __str__(self) -> str:
        if self.operation == "summary":
            return f"summary:{self.user_id}"
        return f"processes:{self.user_id}:{self.limit}:{self.last_evaluated_key or ''}"


class AutoRefresher:
    """Forces a refresh of one key every interval and reports changed values."""

    def __init__(self, cache: "MetricsCache", key: MetricsKey, interval: float) -> None:
        self._cache = cache
        self.key = key
        self.interval = interval
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("auto_refresh_started", key=str(self.key), interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("auto_refresh_stopped", key=str(self.key))

    async def refresh_once(self) -> bool:
        """Force one refresh; True when listeners were told about a new value."""
        previous = self._cache.peek(self.key)
        try:
            value = await self._cache.get(self.key, force_refresh=True)
        except TransportFailure as e:
            logger.warning("auto_refresh_failed", key=str(self.key), error=e.details)
            return False
        if previous is not None and previous.value == value:
            return False
        self._cache.notify(self.key, value)
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.refresh_once()
            except Exception as e:
                logger.error("auto_refresh_error", key=str(self.key), error=str(e), exc_info=True)


class MetricsCache:
    """TTL cache with throttling, request coalescing and stale-on-error fallback.

    Entries are keyed by MetricsKey. A non-forced ``get`` returns, in order:
    the in-flight request's result, a fresh entry, the existing entry while
    throttled, or a new remote load. A failed load falls back to the last
    good value when there is one.
    """

    def __init__(
        self,
        client: AnalyticsClient,
        ttl: Optional[float] = None,
        throttle: Optional[float] = None,
        refresh_interval: Optional[float] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        cfg = get_metrics_config()
        self._client = client
        self.ttl = float(ttl if ttl is not None else cfg["ttl_seconds"])
        self.throttle = float(throttle if throttle is not None else cfg["throttle_seconds"])
        self.refresh_interval = float(
            refresh_interval if refresh_interval is not None else cfg["refresh_interval_seconds"]
        )
        self.default_user_id: str = cfg["default_user_id"]
        self.recent_process_limit = int(cfg["recent_process_limit"])

        self._clock = clock
        self._state: CacheState[MetricsKey, Any] = CacheState()
        self._coalesce: Coalesce[MetricsKey, Any] = Coalesce(
            TTL(
                Throttle(
                    StaleOnError(self._load, self._state, clock),
                    self._state,
                    self.throttle,
                    clock,
                ),
                self._state,
                self.ttl,
                clock,
            )
        )
        self._refreshers: dict[MetricsKey, AutoRefresher] = {}
        self._listeners: list[Listener] = []
        self._initial_load_complete = False
        self.remote_calls = 0

    @property
    def has_completed_initial_load(self) -> bool:
        """Set after the first successful load; a view can skip its loading state."""
        return self._initial_load_complete

    async def _load(self, key: MetricsKey) -> Any:
        self.remote_calls += 1
        logger.debug("metrics_remote_load", key=str(key))
        if key.operation == "summary":
            return await self._client.get_summary(key.user_id)
        if key.operation == "processes":
            return await self._client.get_user_processes(
                key.user_id,
                limit=key.limit or 50,
                last_evaluated_key=key.last_evaluated_key,
            )
        raise ValueError(f"Unknown metrics operation: {key.operation}")

    async def get(self, key: MetricsKey, force_refresh: bool = False) -> Any:
        value = await self._coalesce(key, force_refresh)
        self._initial_load_complete = True
        return value

    def peek(self, key: MetricsKey) -> Optional[CacheEntry[Any]]:
        """Current entry without any load."""
        return self._state.entry(key)

    def is_in_flight(self, key: MetricsKey) -> bool:
        return self._coalesce.in_flight(key)

    async def get_summary(self, user_id: Optional[str] = None, force_refresh: bool = False) -> MetricsSummary:
        return await self.get(MetricsKey.summary(user_id or self.default_user_id), force_refresh)

    async def get_processes(
        self,
        user_id: Optional[str] = None,
        limit: int = 50,
        last_evaluated_key: Optional[str] = None,
        force_refresh: bool = False,
    ) -> ProcessPage:
        key = MetricsKey.processes(user_id or self.default_user_id, limit, last_evaluated_key)
        return await self.get(key, force_refresh)

    def dashboard_keys(self, user_id: Optional[str] = None) -> tuple[MetricsKey, MetricsKey]:
        user = user_id or self.default_user_id
        return MetricsKey.summary(user), MetricsKey.processes(user, self.recent_process_limit)

    async def get_dashboard(self, user_id: Optional[str] = None, force_refresh: bool = False) -> DashboardData:
        """Summary plus the most recent processes, fetched concurrently."""
        summary_key, processes_key = self.dashboard_keys(user_id)
        summary, page = await asyncio.gather(
            self.get(summary_key, force_refresh),
            self.get(processes_key, force_refresh),
        )
        return DashboardData(
            summary=summary,
            recent_processes=page.processes,
            last_updated=datetime.now(timezone.utc),
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register for auto-refresh change notifications; returns the unsubscribe call."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, key: MetricsKey, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception as e:
                logger.error("metrics_listener_failed", key=str(key), error=str(e), exc_info=True)

    def ensure_auto_refresh(self, key: MetricsKey, interval: Optional[float] = None) -> AutoRefresher:
        """Start periodic refresh for key unless one is already running."""
        refresher = self._refreshers.get(key)
        if refresher is None:
            refresher = AutoRefresher(self, key, interval if interval is not None else self.refresh_interval)
            self._refreshers[key] = refresher
        refresher.start()
        return refresher

    async def stop_auto_refresh(self) -> None:
        for refresher in self._refreshers.values():
            await refresher.stop()
        self._refreshers.clear()

    def clear(self) -> None:
        self._state.clear()
        self._initial_load_complete = False

    async def aclose(self) -> None:
        await self.stop_auto_refresh()
        await self._client.aclose()


class DashboardView:
    """A mountable consumer of the shared cache.

    Mounting reads through the cache and keeps the dashboard keys on
    auto-refresh; unmounting only drops this view's subscription.
    """

    def __init__(self, cache: MetricsCache, user_id: Optional[str] = None) -> None:
        self._cache = cache
        self.user_id = user_id or cache.default_user_id
        self.data: Optional[DashboardData] = None
        self.error: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def mounted(self) -> bool:
        return self._unsubscribe is not None

    @property
    def loading(self) -> bool:
        return self.data is None and not self._cache.has_completed_initial_load

    async def mount(self) -> Optional[DashboardData]:
        keys = self._cache.dashboard_keys(self.user_id)
        self._unsubscribe = self._cache.subscribe(self._on_change)
        for key in keys:
            self._cache.ensure_auto_refresh(key)
        await self.reload()
        return self.data

    async def reload(self, force_refresh: bool = False) -> None:
        try:
            self.data = await self._cache.get_dashboard(self.user_id, force_refresh)
            self.error = None
        except TransportFailure as e:
            self.error = e.get_user_message()
            logger.warning("dashboard_load_failed", user_id=self.user_id, error=e.details)

    def unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, key: MetricsKey, value: Any) -> None:
        if key.user_id != self.user_id or self.data is None:
            return
        if key.operation == "summary":
            self.data = self.data.model_copy(
                update={"summary": value, "last_updated": datetime.now(timezone.utc)}
            )
        elif key.operation == "processes" and key.limit == self._cache.recent_process_limit:
            self.data = self.data.model_copy(
                update={"recent_processes": value.processes, "last_updated": datetime.now(timezone.utc)}
            )


_metrics_cache: Optional[MetricsCache] = None


def get_metrics_cache() -> MetricsCache:
    """The process-wide cache; initialize_metrics_cache must have run first."""
    if _metrics_cache is None:
        raise RuntimeError("Metrics cache is not initialized; call initialize_metrics_cache() first")
    return _metrics_cache


async def initialize_metrics_cache(
    client: Optional[AnalyticsClient] = None,
    replace: bool = False,
    **options: Any,
) -> MetricsCache:
    """Create the process-wide cache, or return the existing one.

    With replace=True an existing cache is shut down and a new one built.
    """
    global _metrics_cache

    if _metrics_cache is not None:
        if not replace:
            return _metrics_cache
        await _metrics_cache.aclose()

    _metrics_cache = MetricsCache(client or AnalyticsClient.create(), **options)
    logger.info(
        "metrics_cache_initialized",
        ttl=_metrics_cache.ttl,
        throttle=_metrics_cache.throttle,
        refresh_interval=_metrics_cache.refresh_interval,
    )
    return _metrics_cache


async def shutdown_metrics_cache() -> None:
    global _metrics_cache

    if _metrics_cache is not None:
        await _metrics_cache.aclose()
        _metrics_cache = None
