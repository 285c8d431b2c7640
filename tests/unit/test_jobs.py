"""
Built-in job action tests
"""

import asyncio
from datetime import timedelta

import pytest

from core.exceptions import BackendError, ConfigurationError, RefreshFailed
from models.base import IngestionOutcome
from refresh.graph import ObjectState
from schemas.pipeline import ScheduledJobConfig
from tasks.jobs import (
    build_job,
    maintenance_action,
    refresh_object_action,
    refresh_tick_action,
    retry_failed_ingestions_action,
)
from tasks.triggers import CronSchedule, IntervalSchedule

HOUR = timedelta(hours=1)


@pytest.mark.asyncio
async def test_refresh_object_action(graph, backend, refresh_scheduler):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)

    result = await refresh_object_action(refresh_scheduler, "daily")()

    assert result.refreshed == ["daily"]
    assert graph.get("daily").state == ObjectState.FRESH


@pytest.mark.asyncio
async def test_refresh_object_action_raises_on_failure(graph, backend, refresh_scheduler):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)
    backend.execute_failures["REFRESH daily"] = BackendError("bad sql")

    with pytest.raises(RefreshFailed):
        await refresh_object_action(refresh_scheduler, "daily")()


@pytest.mark.asyncio
async def test_refresh_object_action_raises_when_upstream_fails(graph, backend, refresh_scheduler):
    graph.register("staged", "REFRESH staged", ["raw.orders"], HOUR)
    graph.register("daily", "REFRESH daily", ["staged"], HOUR)
    graph.mark_stale("raw.orders")
    backend.execute_failures["REFRESH staged"] = BackendError("bad sql")

    with pytest.raises(RefreshFailed) as exc_info:
        await refresh_object_action(refresh_scheduler, "daily")()

    assert exc_info.value.context["skipped"] == ["daily"]


@pytest.mark.asyncio
async def test_refresh_object_action_while_tick_refreshes_same_object(
    graph, backend, refresh_scheduler, alert_sink
):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)
    graph.mark_stale("raw.orders")
    backend.gates["REFRESH daily"] = asyncio.Event()

    tick = asyncio.create_task(refresh_scheduler.tick())
    while graph.get("daily").state != ObjectState.REFRESHING:
        await asyncio.sleep(0)

    job = asyncio.create_task(refresh_object_action(refresh_scheduler, "daily")())
    await asyncio.sleep(0)
    backend.gates["REFRESH daily"].set()

    await asyncio.wait_for(tick, timeout=5)
    result = await asyncio.wait_for(job, timeout=5)

    assert result.refreshed == ["daily"]
    assert graph.get("daily").state == ObjectState.FRESH
    assert alert_sink.alerts == []


@pytest.mark.asyncio
async def test_refresh_tick_action(graph, refresh_scheduler):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)
    graph.mark_stale("raw.orders")

    result = await refresh_tick_action(refresh_scheduler)()

    assert result.refreshed == ["daily"]


@pytest.mark.asyncio
async def test_maintenance_action(backend):
    await maintenance_action(backend, "DELETE FROM raw.clicks WHERE 1=0")()

    assert backend.statements == ["DELETE FROM raw.clicks WHERE 1=0"]


@pytest.mark.asyncio
async def test_retry_failed_ingestions_resubmits(ledger, pool, listener):
    failed = await ledger.record_seen("orders", "orders/a.csv", "abc")
    await ledger.mark_failed(failed.id, "boom")
    ok = await ledger.record_seen("orders", "orders/b.csv")
    await ledger.mark_succeeded(ok.id, row_count=1)
    orphan = await ledger.record_seen("retired", "retired/x.csv")
    await ledger.mark_failed(orphan.id, "boom")

    resubmitted = await retry_failed_ingestions_action(ledger, pool, listener)()

    assert resubmitted == 1
    request = pool.queue.get_nowait()
    assert request.event.path == "orders/a.csv"
    assert request.event.checksum == "abc"

    result = await pool.ingest(request)
    assert (await ledger.get(result.record_id)).outcome == IngestionOutcome.SUCCEEDED


@pytest.mark.asyncio
async def test_retry_sweep_window_skips_old_failures(ledger, pool, listener):
    record = await ledger.record_seen("orders", "orders/a.csv")
    await ledger.mark_failed(record.id, "boom")
    await asyncio.sleep(0.05)

    resubmitted = await retry_failed_ingestions_action(
        ledger, pool, listener, window=timedelta(milliseconds=10)
    )()

    assert resubmitted == 0


def test_build_job_from_config(graph, backend, ledger, pool, listener, refresh_scheduler):
    graph.register("daily", "REFRESH daily", ["raw.orders"], HOUR)

    refresh = build_job(
        ScheduledJobConfig(
            job_id="nightly", schedule="USING CRON 0 2 * * * UTC", action="refresh",
            target="daily", escalation_target="oncall"
        ),
        refresh_scheduler, backend, ledger, pool, listener
    )
    sweep = build_job(
        ScheduledJobConfig(job_id="sweep", schedule="15 MINUTES", action="retry_failed_ingestions"),
        refresh_scheduler, backend, ledger, pool, listener
    )

    assert isinstance(refresh.schedule, CronSchedule)
    assert refresh.escalation_target == "oncall"
    assert refresh.description == "Refresh daily"
    assert isinstance(sweep.schedule, IntervalSchedule)


def test_build_job_rejects_unknown_target(backend, ledger, pool, listener, refresh_scheduler):
    with pytest.raises(ConfigurationError):
        build_job(
            ScheduledJobConfig(job_id="j", schedule="5 MINUTES", action="refresh", target="missing"),
            refresh_scheduler, backend, ledger, pool, listener
        )
