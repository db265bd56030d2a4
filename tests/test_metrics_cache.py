"""Tests for the process-wide analytics cache."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from metrics.cache import (
    AutoRefresher,
    DashboardView,
    MetricsCache,
    MetricsKey,
    get_metrics_cache,
    initialize_metrics_cache,
    shutdown_metrics_cache,
)
from metrics.client import AnalyticsClient
from models.metrics import MetricsSummary, calculate_metrics
from utils.error_handler import TransportFailure

from fakes import FakeAnalytics, FakeClock


def make_cache(fake: FakeAnalytics, clock: FakeClock, ttl: float = 60, throttle: float = 5) -> MetricsCache:
    return MetricsCache(fake, ttl=ttl, throttle=throttle, refresh_interval=3600, clock=clock)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_gets_share_one_request(self, clock: FakeClock):
        fake = FakeAnalytics()
        fake.gate = asyncio.Event()
        cache = make_cache(fake, clock)

        first = asyncio.create_task(cache.get_summary("u1"))
        second = asyncio.create_task(cache.get_summary("u1"))
        await settle()
        assert cache.is_in_flight(MetricsKey.summary("u1"))

        fake.gate.set()
        a, b = await asyncio.gather(first, second)

        assert fake.summary_calls == 1
        assert a == b
        assert not cache.is_in_flight(MetricsKey.summary("u1"))

    @pytest.mark.asyncio
    async def test_forced_call_starts_new_request(self, clock: FakeClock):
        fake = FakeAnalytics()
        fake.gate = asyncio.Event()
        cache = make_cache(fake, clock)

        plain = asyncio.create_task(cache.get_summary("u1"))
        await settle()
        forced = asyncio.create_task(cache.get_summary("u1", force_refresh=True))
        await settle()
        fake.gate.set()
        await asyncio.gather(plain, forced)

        assert fake.summary_calls == 2
        assert not cache.is_in_flight(MetricsKey.summary("u1"))

    @pytest.mark.asyncio
    async def test_different_keys_do_not_coalesce(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)
        await asyncio.gather(cache.get_summary("u1"), cache.get_summary("u2"))
        assert fake.summary_calls == 2


class TestFreshness:
    @pytest.mark.asyncio
    async def test_fresh_entry_makes_no_call(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)

        await cache.get_summary("u1")
        clock.advance(59)
        await cache.get_summary("u1")
        assert fake.summary_calls == 1

        clock.advance(2)
        await cache.get_summary("u1")
        assert fake.summary_calls == 2

    @pytest.mark.asyncio
    async def test_throttle_serves_stale_entry(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock, ttl=1, throttle=5)

        await cache.get_summary("u1")
        clock.advance(2)
        await cache.get_summary("u1")
        assert fake.summary_calls == 1

        clock.advance(4)
        await cache.get_summary("u1")
        assert fake.summary_calls == 2

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_ttl_and_throttle(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)
        await cache.get_summary("u1")
        await cache.get_summary("u1", force_refresh=True)
        assert fake.summary_calls == 2

    @pytest.mark.asyncio
    async def test_initial_load_flag(self, clock: FakeClock):
        cache = make_cache(FakeAnalytics(), clock)
        assert not cache.has_completed_initial_load
        await cache.get_summary("u1")
        assert cache.has_completed_initial_load


class TestStaleOnError:
    @pytest.mark.asyncio
    async def test_failure_serves_previous_value(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)
        original = await cache.get_summary("u1")

        fake.fail = True
        clock.advance(120)
        value = await cache.get_summary("u1")

        assert value == original
        assert fake.summary_calls == 2
        assert cache.peek(MetricsKey.summary("u1")).fetched_at == 1000.0

    @pytest.mark.asyncio
    async def test_failure_without_entry_raises(self, clock: FakeClock):
        fake = FakeAnalytics()
        fake.fail = True
        cache = make_cache(fake, clock)

        with pytest.raises(TransportFailure):
            await cache.get_summary("u1")
        assert not cache.is_in_flight(MetricsKey.summary("u1"))

        fake.fail = False
        summary = await cache.get_summary("u1")
        assert summary.total_processes == 5


class TestDashboard:
    @pytest.mark.asyncio
    async def test_dashboard_combines_summary_and_recent(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)

        dashboard = await cache.get_dashboard("u1")

        assert dashboard.summary.total_processes == 5
        assert len(dashboard.recent_processes) == 5
        assert (fake.summary_calls, fake.process_calls) == (1, 1)
        assert cache.peek(MetricsKey.processes("u1", 20)) is not None

    @pytest.mark.asyncio
    async def test_page_parameters_are_part_of_the_key(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)
        await cache.get_processes("u1", limit=20)
        await cache.get_processes("u1", limit=50)
        await cache.get_processes("u1", limit=50, last_evaluated_key="k1")
        assert fake.process_calls == 3

    def test_key_rendering(self):
        assert str(MetricsKey.summary("u1")) == "summary:u1"
        assert str(MetricsKey.processes("u1", 20)) == "processes:u1:20:"

    def test_calculate_metrics(self):
        derived = calculate_metrics(
            MetricsSummary(total_processes=5, total_tokens_used=500, total_input_rows=200, total_output_rows=150)
        )
        assert derived.avg_tokens_per_process == 100
        assert derived.data_efficiency == 75.0

    def test_calculate_metrics_zero_safe(self):
        derived = calculate_metrics(MetricsSummary())
        assert derived.avg_tokens_per_process == 0
        assert derived.data_efficiency == 0.0


class TestProcessWideCache:
    @pytest.mark.asyncio
    async def test_initialize_returns_existing_instance(self):
        fake = FakeAnalytics()
        try:
            cache = await initialize_metrics_cache(client=fake, refresh_interval=3600)
            again = await initialize_metrics_cache(client=FakeAnalytics())
            assert again is cache
            assert get_metrics_cache() is cache
        finally:
            await shutdown_metrics_cache()

        assert fake.closed
        with pytest.raises(RuntimeError):
            get_metrics_cache()

    @pytest.mark.asyncio
    async def test_replace_builds_new_instance(self):
        old_client = FakeAnalytics()
        try:
            old = await initialize_metrics_cache(client=old_client, refresh_interval=3600)
            new = await initialize_metrics_cache(client=FakeAnalytics(), replace=True, refresh_interval=3600)
            assert new is not old
            assert old_client.closed
        finally:
            await shutdown_metrics_cache()

    @pytest.mark.asyncio
    async def test_remount_reuses_cached_data(self, clock: FakeClock):
        fake = FakeAnalytics()
        try:
            await initialize_metrics_cache(client=fake, clock=clock, refresh_interval=3600)

            first = DashboardView(get_metrics_cache(), "u1")
            assert first.loading
            await first.mount()
            first.unmount()

            second = DashboardView(get_metrics_cache(), "u1")
            assert not second.loading
            data = await second.mount()

            assert data.summary.total_processes == 5
            assert (fake.summary_calls, fake.process_calls) == (1, 1)

            cache = get_metrics_cache()
            key = MetricsKey.summary("u1")
            assert cache.ensure_auto_refresh(key) is cache.ensure_auto_refresh(key)
            second.unmount()
        finally:
            await shutdown_metrics_cache()


class TestAutoRefresh:
    @pytest.mark.asyncio
    async def test_refresh_notifies_on_change(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)
        key = MetricsKey.summary("u1")
        await cache.get(key)
        seen: list = []
        cache.subscribe(lambda k, v: seen.append((k, v)))
        refresher = AutoRefresher(cache, key, interval=120)

        assert not await refresher.refresh_once()
        fake.total_processes = 7
        assert await refresher.refresh_once()

        assert len(seen) == 1
        assert seen[0][1].total_processes == 7

    @pytest.mark.asyncio
    async def test_refresh_failure_is_a_no_op(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)
        key = MetricsKey.summary("u1")
        refresher = AutoRefresher(cache, key, interval=120)

        fake.fail = True
        assert not await refresher.refresh_once()
        assert cache.peek(key) is None

    @pytest.mark.asyncio
    async def test_loop_refreshes_until_stopped(self):
        fake = FakeAnalytics()
        cache = MetricsCache(fake, ttl=60, throttle=5)
        refresher = cache.ensure_auto_refresh(MetricsKey.summary("u1"), interval=0.01)
        assert refresher.running

        await asyncio.sleep(0.1)
        await cache.stop_auto_refresh()

        assert fake.summary_calls >= 2
        assert not refresher.running

    @pytest.mark.asyncio
    async def test_mounted_view_receives_updates(self, clock: FakeClock):
        fake = FakeAnalytics()
        cache = make_cache(fake, clock)
        view = DashboardView(cache, "u1")
        await view.mount()
        refresher = AutoRefresher(cache, MetricsKey.summary("u1"), interval=120)

        fake.total_processes = 9
        await refresher.refresh_once()
        assert view.data.summary.total_processes == 9

        view.unmount()
        fake.total_processes = 11
        await refresher.refresh_once()
        assert view.data.summary.total_processes == 9
        await cache.stop_auto_refresh()


def analytics_client(handler) -> AnalyticsClient:
    http = httpx.AsyncClient(base_url="http://analytics.test", transport=httpx.MockTransport(handler))
    return AnalyticsClient(http)


class TestAnalyticsClient:
    @pytest.mark.asyncio
    async def test_summary_envelope_unwrapped(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True, "data": {"total_processes": 4, "success_rate": 0.5}})

        summary = await analytics_client(handler).get_summary("u1")

        assert summary.total_processes == 4
        assert seen[0].url.path == "/analytics/summary"
        assert seen[0].url.params["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_process_page_parameters(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            data = {"processes": [{"process_id": "p1"}], "last_evaluated_key": "next"}
            return httpx.Response(200, json={"success": True, "data": data})

        page = await analytics_client(handler).get_user_processes("u1", limit=20, last_evaluated_key="k0")

        assert page.last_evaluated_key == "next"
        assert seen[0].url.params["limit"] == "20"
        assert seen[0].url.params["last_evaluated_key"] == "k0"

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "message": "no data for user"})

        with pytest.raises(TransportFailure) as exc:
            await analytics_client(handler).get_summary("u1")
        assert exc.value.details == "no data for user"

    @pytest.mark.asyncio
    async def test_server_error_is_retryable_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, json={"detail": "bad gateway"})

        with pytest.raises(TransportFailure) as exc:
            await analytics_client(handler).get_summary("u1")
        assert exc.value.status_code == 502
        assert exc.value.is_retryable
