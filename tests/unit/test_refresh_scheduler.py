"""
Refresh scheduler tests
"""

import asyncio
from datetime import timedelta

import pytest

from core.alerts import Severity
from core.exceptions import BackendError
from core.timeutils import utcnow
from refresh.graph import ObjectState

HOUR = timedelta(hours=1)


async def wait_for_statements(backend, count):
    async def poll():
        while len(backend.statements) < count:
            await asyncio.sleep(0)
    await asyncio.wait_for(poll(), timeout=5)


@pytest.mark.asyncio
async def test_tick_refreshes_overdue_stale_object(graph, backend, refresh_scheduler):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)
    graph.mark_stale("raw.orders")

    result = await refresh_scheduler.tick()

    assert result.refreshed == ["daily"]
    assert backend.statements == ["REFRESH daily"]
    daily = graph.get("daily")
    assert daily.state == ObjectState.FRESH
    assert daily.last_refreshed_at is not None
    assert refresh_scheduler.last_pass is result


@pytest.mark.asyncio
async def test_tick_ignores_fresh_objects(graph, backend, refresh_scheduler):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)

    result = await refresh_scheduler.tick()

    assert result.planned == []
    assert backend.statements == []


@pytest.mark.asyncio
async def test_object_within_budget_waits(graph, backend, refresh_scheduler):
    now = utcnow()
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR, last_refreshed_at=now - timedelta(minutes=30))
    graph.mark_stale("raw.orders", at=now)

    early = await refresh_scheduler.tick(now)
    assert early.planned == []
    assert graph.get("daily").state == ObjectState.STALE

    late = await refresh_scheduler.tick(now + HOUR)
    assert late.refreshed == ["daily"]


@pytest.mark.asyncio
async def test_most_overdue_object_goes_first(graph, refresh_scheduler):
    now = utcnow()
    graph.register("slightly", "REFRESH slightly", ["raw.a"], HOUR, last_refreshed_at=now - 2 * HOUR)
    graph.register("badly", "REFRESH badly", ["raw.b"], HOUR, last_refreshed_at=now - 5 * HOUR)
    graph.register("never", "REFRESH never", ["raw.c"], HOUR)
    for raw in ("raw.a", "raw.b", "raw.c"):
        graph.mark_stale(raw, at=now)

    assert refresh_scheduler.plan(now) == ["never", "badly", "slightly"]


@pytest.mark.asyncio
async def test_upstream_refreshes_before_downstream(graph, backend, refresh_scheduler):
    graph.register("staged", "REFRESH staged", ["raw.orders"], HOUR)
    graph.register("daily", "REFRESH daily", ["staged"], HOUR)
    graph.mark_stale("raw.orders")

    result = await refresh_scheduler.tick()

    assert result.planned == ["staged", "daily"]
    assert backend.statements == ["REFRESH staged", "REFRESH daily"]
    assert graph.get("daily").state == ObjectState.FRESH


@pytest.mark.asyncio
async def test_stale_ancestor_pulled_into_pass(graph, refresh_scheduler):
    now = utcnow()
    graph.register("staged", "REFRESH staged", ["raw.orders"], timedelta(days=1), last_refreshed_at=now - 3 * HOUR)
    graph.register("daily", "REFRESH daily", ["staged"], HOUR, last_refreshed_at=now - 3 * HOUR)
    graph.mark_stale("raw.orders", at=now - 2 * HOUR)

    # staged is within its own budget but daily is not
    assert refresh_scheduler.plan(now) == ["staged", "daily"]


@pytest.mark.asyncio
async def test_chained_object_waits_for_budget_after_upstream_refresh(graph, backend, refresh_scheduler):
    now = utcnow()
    graph.register("d1", "REFRESH d1", ["raw.orders"], HOUR, last_refreshed_at=now - 2 * HOUR)
    graph.register("d2", "REFRESH d2", ["d1"], HOUR, last_refreshed_at=now - 2 * HOUR)
    graph.mark_stale("d1", at=now - 2 * HOUR)
    graph.begin_refresh("d1")
    graph.complete_refresh("d1", at=now)

    early = await refresh_scheduler.tick(now)
    assert early.planned == []
    assert graph.get("d2").state == ObjectState.STALE

    late = await refresh_scheduler.tick(now + HOUR)
    assert late.refreshed == ["d2"]
    assert backend.statements == ["REFRESH d2"]


@pytest.mark.asyncio
async def test_failure_is_isolated(graph, backend, refresh_scheduler, alert_sink):
    graph.register("a", "REFRESH a", ["raw.orders"], HOUR)
    graph.register("b", "REFRESH b", ["a"], HOUR)
    graph.register("c", "REFRESH c", ["raw.orders"], HOUR)
    backend.execute_failures["REFRESH a"] = BackendError("syntax error")
    graph.mark_stale("raw.orders")

    result = await refresh_scheduler.tick()

    assert result.failed == ["a"]
    assert result.skipped == ["b"]
    assert result.refreshed == ["c"]
    assert graph.get("a").state == ObjectState.FAILED
    assert "syntax error" in graph.get("a").last_error
    assert graph.get("b").state == ObjectState.STALE
    assert graph.get("c").state == ObjectState.FRESH
    assert "REFRESH b" not in backend.statements

    assert len(alert_sink.alerts) == 1
    assert alert_sink.alerts[0].subsystem == "refresh"
    assert alert_sink.alerts[0].severity == Severity.ERROR


@pytest.mark.asyncio
async def test_failed_object_retried_next_tick(graph, backend, refresh_scheduler):
    graph.register("a", "REFRESH a", ["raw.orders"], HOUR)
    backend.execute_failures["REFRESH a"] = RuntimeError("connection reset")
    graph.mark_stale("raw.orders")

    first = await refresh_scheduler.tick()
    assert first.failed == ["a"]

    del backend.execute_failures["REFRESH a"]
    second = await refresh_scheduler.tick()

    assert second.refreshed == ["a"]
    assert graph.get("a").state == ObjectState.FRESH
    assert graph.get("a").last_error is None


@pytest.mark.asyncio
async def test_independent_objects_refresh_concurrently(graph, backend, refresh_scheduler):
    graph.register("a", "REFRESH a", ["raw.a"], HOUR)
    graph.register("b", "REFRESH b", ["raw.b"], HOUR)
    graph.mark_stale("raw.a")
    graph.mark_stale("raw.b")
    backend.gate = asyncio.Event()

    task = asyncio.create_task(refresh_scheduler.tick())
    await wait_for_statements(backend, 2)
    assert graph.get("a").state == ObjectState.REFRESHING
    assert graph.get("b").state == ObjectState.REFRESHING

    backend.gate.set()
    result = await task

    assert sorted(result.refreshed) == ["a", "b"]


@pytest.mark.asyncio
async def test_dispatch_does_not_wait_for_slow_refresh(graph, backend, refresh_scheduler):
    graph.register("slow", "REFRESH slow", ["raw.a"], HOUR)
    graph.register("quick", "REFRESH quick", ["raw.b"], HOUR)
    backend.gates["REFRESH slow"] = asyncio.Event()
    graph.mark_stale("raw.a")

    first = await refresh_scheduler.dispatch()
    await wait_for_statements(backend, 1)
    assert not first.done()
    assert refresh_scheduler.in_flight == ["slow"]

    # A later tick still refreshes an independent object
    graph.mark_stale("raw.b")
    second = await refresh_scheduler.dispatch()
    result = await asyncio.wait_for(second, timeout=5)

    assert result.refreshed == ["quick"]
    assert graph.get("quick").state == ObjectState.FRESH
    assert graph.get("slow").state == ObjectState.REFRESHING

    backend.gates["REFRESH slow"].set()
    assert (await asyncio.wait_for(first, timeout=5)).refreshed == ["slow"]
    assert refresh_scheduler.in_flight == []


@pytest.mark.asyncio
async def test_objects_in_running_pass_are_not_planned_again(graph, backend, refresh_scheduler):
    graph.register("staged", "REFRESH staged", ["raw.orders"], HOUR)
    graph.register("daily", "REFRESH daily", ["staged"], HOUR)
    backend.gates["REFRESH staged"] = asyncio.Event()
    graph.mark_stale("raw.orders")

    first = await refresh_scheduler.dispatch()
    await wait_for_statements(backend, 1)
    assert graph.get("daily").state == ObjectState.STALE

    second = await refresh_scheduler.tick()
    assert second.planned == []

    backend.gates["REFRESH staged"].set()
    result = await asyncio.wait_for(first, timeout=5)

    assert result.refreshed == ["staged", "daily"]
    assert backend.statements == ["REFRESH staged", "REFRESH daily"]


@pytest.mark.asyncio
async def test_driver_tick_returns_while_refresh_runs(graph, backend, refresh_scheduler):
    graph.register("slow", "REFRESH slow", ["raw.a"], HOUR)
    backend.gates["REFRESH slow"] = asyncio.Event()
    graph.mark_stale("raw.a")

    await asyncio.wait_for(refresh_scheduler._scheduled_tick(), timeout=1)
    await wait_for_statements(backend, 1)
    assert graph.get("slow").state == ObjectState.REFRESHING

    await refresh_scheduler.stop()
    assert graph.get("slow").state == ObjectState.STALE
    assert refresh_scheduler.in_flight == []


@pytest.mark.asyncio
async def test_refresh_now_waits_for_running_refresh(graph, backend, refresh_scheduler, alert_sink):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)
    backend.gates["REFRESH daily"] = asyncio.Event()
    graph.mark_stale("raw.orders")

    tick = asyncio.create_task(refresh_scheduler.tick())
    await wait_for_statements(backend, 1)
    forced = asyncio.create_task(refresh_scheduler.refresh_now(["daily"]))
    await asyncio.sleep(0)
    assert not forced.done()

    backend.gates["REFRESH daily"].set()
    tick_result = await asyncio.wait_for(tick, timeout=5)
    forced_result = await asyncio.wait_for(forced, timeout=5)

    assert tick_result.refreshed == ["daily"]
    assert forced_result.refreshed == ["daily"]
    assert backend.statements == ["REFRESH daily", "REFRESH daily"]
    assert alert_sink.alerts == []


@pytest.mark.asyncio
async def test_stop_cancels_refresh_and_leaves_object_stale(graph, backend, refresh_scheduler):
    graph.register("a", "REFRESH a", ["raw.a"], HOUR)
    graph.mark_stale("raw.a")
    backend.gate = asyncio.Event()

    task = asyncio.create_task(refresh_scheduler.tick())
    await wait_for_statements(backend, 1)
    await refresh_scheduler.stop()
    result = await task

    assert result.cancelled == ["a"]
    assert result.refreshed == []
    assert graph.get("a").state == ObjectState.STALE


@pytest.mark.asyncio
async def test_refresh_now_forces_fresh_object(graph, backend, refresh_scheduler):
    graph.register("a", "REFRESH a", ["raw.a"], HOUR, last_refreshed_at=utcnow())

    result = await refresh_scheduler.refresh_now(["a"])

    assert result.refreshed == ["a"]
    assert backend.statements == ["REFRESH a"]
    assert graph.get("a").state == ObjectState.FRESH


@pytest.mark.asyncio
async def test_freshness_report(graph, refresh_scheduler):
    now = utcnow()
    graph.register("a", "REFRESH a", ["raw.a"], HOUR, last_refreshed_at=now - 2 * HOUR)
    graph.register("b", "REFRESH b", ["raw.b"], HOUR, last_refreshed_at=now)
    graph.mark_stale("raw.a", at=now)

    report = {entry["object_id"]: entry for entry in refresh_scheduler.freshness(now)}

    assert report["a"]["state"] == "stale"
    assert report["a"]["overdue"] is True
    assert report["a"]["age_seconds"] == pytest.approx(7200)
    assert report["a"]["staleness_budget_seconds"] == 3600
    assert report["b"]["state"] == "fresh"
    assert report["b"]["overdue"] is False


@pytest.mark.asyncio
async def test_start_and_stop_driver(refresh_scheduler):
    refresh_scheduler.start(interval_seconds=3600)
    assert refresh_scheduler.scheduler.running

    await refresh_scheduler.stop()
    assert refresh_scheduler.scheduler is None
