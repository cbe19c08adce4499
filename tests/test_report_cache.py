import asyncio
from datetime import date
from decimal import Decimal

from models import PeriodType, ViewScope
from report_cache import (
    CacheKey,
    LoadState,
    ReportCacheCoordinator,
    ReportCacheRegistry,
)
from reports import Report
from summary import summarize_bills


class FakeBuilder:
    def __init__(self) -> None:
        self.calls = []
        self.gates: dict[str, asyncio.Event] = {}
        self.failing: set[str] = set()

    async def __call__(self, period_type, view_scope, selector_id, data_version, force):
        self.calls.append((period_type, view_scope, selector_id, data_version, force))
        build_no = len(self.calls)
        gate = self.gates.get(selector_id)
        if gate is not None:
            await gate.wait()
        if selector_id in self.failing:
            raise RuntimeError("report backend unavailable")
        report = Report.empty(period_type, view_scope, selector_id)
        report.data_version = data_version
        report.average_spending = Decimal(build_no)
        report.summary = summarize_bills(
            [], None, period_type, date(2025, 1, 1), date(2025, 1, 7)
        )
        return report


async def _drain() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _coordinator(builder, **kwargs) -> ReportCacheCoordinator:
    kwargs.setdefault("preload", False)
    kwargs.setdefault("loading_timeout", 10)
    return ReportCacheCoordinator(builder, **kwargs)


def test_cache_key_renders_pipe_separated() -> None:
    key = CacheKey(PeriodType.month, ViewScope.family, "month-2")
    assert str(key) == "month|family|month-2"


def test_second_get_is_served_from_cache() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder)
        first = await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        second = await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        return builder, cache, first, second

    builder, cache, first, second = asyncio.run(scenario())
    assert len(builder.calls) == 1
    assert first is second
    assert cache.is_cached(PeriodType.month, ViewScope.personal, "month-0")
    assert cache.state == LoadState.idle
    assert cache.current.report is first


def test_concurrent_gets_share_one_fetch() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder)
        results = await asyncio.gather(
            cache.get(PeriodType.week, ViewScope.personal, "week-0", 1),
            cache.get(PeriodType.week, ViewScope.personal, "week-0", 1),
            cache.get(PeriodType.week, ViewScope.personal, "week-0", 1, True),
        )
        return builder, results

    builder, results = asyncio.run(scenario())
    assert len(builder.calls) == 1
    assert results[0] is results[1] is results[2]


def test_force_refresh_refetches() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder)
        await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        refreshed = await cache.get(
            PeriodType.month, ViewScope.personal, "month-0", 1, force_refresh=True
        )
        return builder, refreshed

    builder, refreshed = asyncio.run(scenario())
    assert len(builder.calls) == 2
    assert builder.calls[1][4] is True
    assert refreshed.average_spending == Decimal(2)


def test_new_data_version_invalidates_everything() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder)
        await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        await cache.get(PeriodType.year, ViewScope.personal, "year-0", 1)
        assert cache.notify_data_version(1) is False
        assert cache.notify_data_version(2) is True
        assert not cache.is_cached(PeriodType.year, ViewScope.personal, "year-0")
        report = await cache.get(PeriodType.month, ViewScope.personal, "month-0", 2)
        return builder, report

    builder, report = asyncio.run(scenario())
    assert len(builder.calls) == 3
    assert report.data_version == 2


def test_older_version_does_not_invalidate() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder)
        await cache.get(PeriodType.month, ViewScope.personal, "month-0", 5)
        assert cache.notify_data_version(4) is False
        return cache

    cache = asyncio.run(scenario())
    assert cache.data_version == 5
    assert cache.is_cached(PeriodType.month, ViewScope.personal, "month-0")


def test_late_result_does_not_replace_newer_view() -> None:
    async def scenario():
        builder = FakeBuilder()
        builder.gates["month-1"] = asyncio.Event()
        cache = _coordinator(builder)

        slow = asyncio.create_task(
            cache.get(PeriodType.month, ViewScope.personal, "month-1", 1)
        )
        await _drain()
        fast = await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        assert cache.current.period_selector_id == "month-0"
        assert cache.state == LoadState.loading

        builder.gates["month-1"].set()
        late = await slow
        return cache, fast, late

    cache, fast, late = asyncio.run(scenario())
    assert cache.current.period_selector_id == "month-0"
    assert cache.current.report is fast
    # Still a valid result for its own key.
    assert cache.is_cached(PeriodType.month, ViewScope.personal, "month-1")
    assert late.period_selector_id == "month-1"
    assert cache.state == LoadState.idle


def test_result_for_old_version_is_not_cached() -> None:
    async def scenario():
        builder = FakeBuilder()
        builder.gates["month-0"] = asyncio.Event()
        cache = _coordinator(builder)

        pending = asyncio.create_task(
            cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        )
        await _drain()
        cache.notify_data_version(2)
        builder.gates["month-0"].set()
        await pending
        return cache

    cache = asyncio.run(scenario())
    assert not cache.is_cached(PeriodType.month, ViewScope.personal, "month-0")


def test_builder_failure_yields_empty_report(caplog) -> None:
    async def scenario():
        builder = FakeBuilder()
        builder.failing.add("month-0")
        cache = _coordinator(builder)
        report = await cache.get(PeriodType.month, ViewScope.family, "month-0", 1)
        return cache, report

    cache, report = asyncio.run(scenario())
    assert report.is_empty
    assert report.view_scope == ViewScope.family
    assert not cache.is_cached(PeriodType.month, ViewScope.family, "month-0")
    assert cache.state == LoadState.idle
    assert "report_build_failed" in caplog.text


def test_preload_warms_other_period_types_once() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder, preload=True)
        await cache.get(PeriodType.month, ViewScope.personal, "month-3", 1)
        state_after_get = cache.state
        await _drain()
        await cache.get(PeriodType.month, ViewScope.personal, "month-2", 1)
        await _drain()
        return builder, cache, state_after_get

    builder, cache, state_after_get = asyncio.run(scenario())
    assert state_after_get == LoadState.background_loading
    requested = [call[2] for call in builder.calls]
    assert requested == ["month-3", "week-0", "year-0", "month-2"]
    assert cache.is_cached(PeriodType.week, ViewScope.personal, "week-0")
    assert cache.is_cached(PeriodType.year, ViewScope.personal, "year-0")
    assert cache.current.period_selector_id == "month-2"
    assert cache.state == LoadState.idle


def test_stuck_loading_is_reset_by_liveness_guard(caplog) -> None:
    async def scenario():
        builder = FakeBuilder()
        builder.gates["month-0"] = asyncio.Event()
        cache = _coordinator(builder, loading_timeout=0.05)
        report = await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        state = cache.state
        # A fresh request after the reset starts a new fetch.
        builder.gates.clear()
        retry = await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        return builder, report, state, retry

    builder, report, state, retry = asyncio.run(scenario())
    assert report.is_empty
    assert state == LoadState.idle
    assert not retry.is_empty
    assert len(builder.calls) == 2
    assert "report_cache_loading_timeout" in caplog.text


def test_switch_period_commits_cached_view_at_once() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder)
        month = await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        await cache.get(PeriodType.week, ViewScope.personal, "week-0", 1)
        switched = await cache.switch_period(
            PeriodType.month, "month-0", ViewScope.personal, 1
        )
        return builder, cache, month, switched

    builder, cache, month, switched = asyncio.run(scenario())
    assert len(builder.calls) == 2
    assert switched is month
    view = cache.current
    assert (view.period_type, view.period_selector_id) == (PeriodType.month, "month-0")
    assert view.report is month


def test_switch_period_fetches_when_not_cached() -> None:
    async def scenario():
        builder = FakeBuilder()
        cache = _coordinator(builder)
        report = await cache.switch_period(
            PeriodType.year, "year-1", ViewScope.family, 1
        )
        return builder, cache, report

    builder, cache, report = asyncio.run(scenario())
    assert len(builder.calls) == 1
    assert cache.current.report is report
    assert cache.is_cached(PeriodType.year, ViewScope.family, "year-1")


def test_close_cancels_pending_fetches() -> None:
    async def scenario():
        builder = FakeBuilder()
        builder.gates["month-0"] = asyncio.Event()
        cache = _coordinator(builder)
        pending = asyncio.create_task(
            cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        )
        await _drain()
        await cache.close()
        report = await pending
        return cache, report

    cache, report = asyncio.run(scenario())
    assert report.is_empty
    assert cache.state == LoadState.idle


def test_returning_to_a_slow_period_shows_it_once_loaded() -> None:
    async def scenario():
        builder = FakeBuilder()
        builder.gates["month-1"] = asyncio.Event()
        cache = _coordinator(builder)

        first = asyncio.create_task(
            cache.get(PeriodType.month, ViewScope.personal, "month-1", 1)
        )
        await _drain()
        await cache.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        again = asyncio.create_task(
            cache.get(PeriodType.month, ViewScope.personal, "month-1", 1)
        )
        await _drain()

        builder.gates["month-1"].set()
        reports = await asyncio.gather(first, again)
        return builder, cache, reports

    builder, cache, reports = asyncio.run(scenario())
    # The second month-1 request joined the pending fetch.
    assert len(builder.calls) == 2
    assert reports[0] is reports[1]
    assert cache.current.period_selector_id == "month-1"
    assert cache.current.report is reports[1]


def test_registry_closes_least_recently_used_session() -> None:
    async def scenario():
        builders = {}

        def factory(user_id):
            builders[user_id] = FakeBuilder()
            return _coordinator(builders[user_id])

        registry = ReportCacheRegistry(factory, max_sessions=2)
        first = await registry.acquire(1)
        builders[1].gates["month-0"] = asyncio.Event()
        pending = asyncio.create_task(
            first.get(PeriodType.month, ViewScope.personal, "month-0", 1)
        )
        await _drain()

        await registry.acquire(2)
        assert await registry.acquire(1) is first
        await registry.acquire(3)
        evicted_second = 2 not in registry

        await registry.acquire(4)
        report = await pending
        return registry, first, report, evicted_second

    registry, first, report, evicted_second = asyncio.run(scenario())
    assert evicted_second
    assert 1 not in registry
    assert registry.get(4) is not None
    # Closing cancelled the fetch that was still running for user 1.
    assert report.is_empty
    assert first.state == LoadState.idle


def test_registry_close_closes_every_session() -> None:
    async def scenario():
        registry = ReportCacheRegistry(lambda user_id: _coordinator(FakeBuilder()))
        coordinator = await registry.acquire(1)
        await registry.close()
        return registry, coordinator

    registry, coordinator = asyncio.run(scenario())
    assert registry.get(1) is None
    assert coordinator.state == LoadState.idle
