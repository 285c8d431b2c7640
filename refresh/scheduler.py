"""
Refresh Scheduler - periodically brings stale derived objects up to date.

Each tick:
1. Failed objects from earlier ticks become stale again (retry)
2. Stale objects older than their staleness budget are selected
3. Their stale ancestors are added so upstream data is current first
4. The set is ordered upstream-before-downstream, most overdue first
5. Per-object refresh tasks are started and tracked in flight; the tick
   returns without waiting for the backend. An object whose derived
   upstream is not fresh waits for a later tick

Polling on a fixed interval coalesces bursts of upstream changes into one
refresh per object.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
import functools
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.alerts import Alerter, Severity
from core.exceptions import PipelineException, RefreshFailed
from core.timeutils import utcnow
from ingestion.backend import ExecutionBackend
from refresh.graph import DependencyGraph, ObjectState

logger = logging.getLogger(__name__)


@dataclass
class RefreshPassResult:
    """Outcome of one refresh pass"""
    started_at: datetime
    planned: List[str] = field(default_factory=list)
    refreshed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "planned": self.planned,
            "refreshed": self.refreshed,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
        }


class RefreshScheduler:
    """
    Drives derived-object refreshes.

    The begin_refresh transition (stale -> refreshing) is the per-object
    lock: an object already refreshing is never picked up a second time.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        backend: ExecutionBackend,
        alerter: Optional[Alerter] = None
    ):
        self.graph = graph
        self.backend = backend
        self.alerter = alerter or Alerter()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.last_pass: Optional[RefreshPassResult] = None
        self._in_flight: Set[asyncio.Task] = set()
        # object id -> its refresh task in a pass that has not finished
        self._pending: Dict[str, asyncio.Task] = {}
        self._passes: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, now: datetime, object_ids: Optional[Iterable[str]] = None) -> List[str]:
        """
        Compute the refresh order for this pass.

        With object_ids, those objects are forced regardless of budget;
        otherwise every overdue stale object is selected.
        """
        if object_ids is None:
            selected = {
                obj.object_id for obj in self.graph.objects()
                if obj.state == ObjectState.STALE and obj.is_overdue(now)
            }
        else:
            selected = set()
            for object_id in object_ids:
                obj = self.graph.get(object_id)
                if obj.state in (ObjectState.STALE, ObjectState.FAILED, ObjectState.FRESH):
                    selected.add(object_id)

        for object_id in list(selected):
            selected |= self.graph.stale_ancestors(object_id)
        # Already part of a pass that is still running
        selected -= self._pending.keys()

        return self.graph.topological_order(
            selected,
            # Most overdue first among independent objects
            key=lambda obj: -obj.overrun(now).total_seconds()
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def dispatch(self, now: Optional[datetime] = None) -> asyncio.Task:
        """
        Plan a pass and start its refreshes without waiting for them.

        Returns:
            Task that completes with the pass's RefreshPassResult
        """
        now = now or utcnow()
        reset = self.graph.reset_failed()
        if reset:
            logger.info(f"Retrying previously failed objects: {', '.join(reset)}")

        try:
            order = self.plan(now)
        except PipelineException as e:
            logger.error(f"Refresh planning failed: {e.message}", extra={"error_context": e.to_dict()})
            await self.alerter.escalate(
                Severity.CRITICAL, "refresh", "Refresh planning failed", e.to_dict()
            )
            order = []

        return self._start_pass(order, now)

    async def tick(self, now: Optional[datetime] = None) -> RefreshPassResult:
        """
        Run one scheduling pass to completion. Never raises: failures are
        recorded on the objects and escalated.
        """
        return await (await self.dispatch(now))

    async def refresh_now(self, object_ids: Iterable[str]) -> RefreshPassResult:
        """
        Refresh the given objects (and their stale ancestors) immediately,
        ignoring staleness budgets. Fresh objects are refreshed too.

        Refreshes already running on these objects or their ancestors are
        waited for first, so the result reflects a refresh that started
        after this call.
        """
        object_ids = list(object_ids)
        related = set(object_ids)
        for object_id in object_ids:
            related |= self.graph.ancestors(object_id)

        while True:
            running = [task for oid, task in self._pending.items() if oid in related]
            if not running:
                break
            # wait() leaves the other pass running if this call is cancelled
            await asyncio.wait(running)

        now = utcnow()
        for object_id in object_ids:
            obj = self.graph.get(object_id)
            if obj.state == ObjectState.FRESH:
                self.graph.mark_stale(object_id, at=now)
        order = self.plan(now, object_ids)
        return await self._start_pass(order, now)

    def _start_pass(self, order: List[str], now: datetime) -> asyncio.Task:
        result = RefreshPassResult(started_at=now, planned=list(order))
        tasks: Dict[str, asyncio.Task] = {}
        if order:
            logger.info(f"Refresh pass: {' -> '.join(order)}")
        in_pass = set(order)

        async def run_one(object_id: str):
            obj = self.graph.get(object_id)
            upstream_tasks = [
                tasks[u] for u in obj.upstream_ids if u in in_pass and u in tasks
            ]
            if upstream_tasks:
                await asyncio.wait(upstream_tasks)
            await self._refresh_object(object_id, result)

        # Tasks are created in topological order, so upstream tasks exist
        # before any dependent looks them up
        for object_id in order:
            task = asyncio.create_task(run_one(object_id), name=f"refresh:{object_id}")
            tasks[object_id] = task
            self._in_flight.add(task)
            self._pending[object_id] = task
            task.add_done_callback(self._in_flight.discard)
            task.add_done_callback(functools.partial(self._release, object_id))

        pass_task = asyncio.create_task(self._finish_pass(tasks, result), name="refresh:pass")
        self._passes.add(pass_task)
        pass_task.add_done_callback(self._passes.discard)
        return pass_task

    def _release(self, object_id: str, task: asyncio.Task):
        if self._pending.get(object_id) is task:
            del self._pending[object_id]

    async def _finish_pass(self, tasks: Dict[str, asyncio.Task], result: RefreshPassResult) -> RefreshPassResult:
        if not tasks:
            self.last_pass = result
            return result

        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for object_id, outcome in zip(tasks, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                if object_id not in result.cancelled:
                    result.cancelled.append(object_id)
            elif isinstance(outcome, BaseException):
                logger.error(f"Unexpected error refreshing {object_id}: {outcome}")

        logger.info(
            f"Refresh pass complete: refreshed={len(result.refreshed)}, "
            f"failed={len(result.failed)}, skipped={len(result.skipped)}"
        )
        self.last_pass = result
        return result

    async def _refresh_object(self, object_id: str, result: RefreshPassResult):
        obj = self.graph.get(object_id)

        blocked = [
            u for u in obj.upstream_ids
            if u in self.graph and self.graph.get(u).state != ObjectState.FRESH
        ]
        if blocked:
            logger.info(f"Skipping {object_id}: upstream not fresh ({', '.join(blocked)})")
            result.skipped.append(object_id)
            return

        if not self.graph.begin_refresh(object_id):
            logger.info(f"Skipping {object_id}: state is {obj.state.value}")
            result.skipped.append(object_id)
            return

        logger.info(f"Refreshing {object_id}")
        try:
            await self.backend.execute(obj.definition)

        except asyncio.CancelledError:
            self.graph.cancel_refresh(object_id)
            result.cancelled.append(object_id)
            logger.warning(f"Refresh of {object_id} cancelled; left stale")
            raise

        except Exception as e:
            error = RefreshFailed(
                f"Refresh of {object_id} failed",
                context={
                    "object_id": object_id,
                    "upstream_ids": list(obj.upstream_ids),
                    "error_type": type(e).__name__,
                    "error_message": str(e)
                },
                original_exception=e
            )
            self.graph.fail_refresh(object_id, str(e))
            result.failed.append(object_id)
            logger.error(error.message, extra={"error_context": error.to_dict()})
            await self.alerter.escalate(
                Severity.ERROR, "refresh", error.message, error.to_dict()
            )
            return

        self.graph.complete_refresh(object_id, at=utcnow())
        result.refreshed.append(object_id)
        logger.info(f"Refreshed {object_id}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def freshness(self, now: Optional[datetime] = None) -> List[Dict[str, object]]:
        now = now or utcnow()
        report = []
        for obj in sorted(self.graph.objects(), key=lambda o: o.object_id):
            age = obj.age(now)
            report.append({
                "object_id": obj.object_id,
                "state": obj.state.value,
                "upstream_ids": list(obj.upstream_ids),
                "staleness_budget_seconds": obj.staleness_budget.total_seconds(),
                "last_refreshed_at": obj.last_refreshed_at,
                "stale_since": obj.stale_since,
                "age_seconds": age.total_seconds() if age is not None else None,
                "overdue": obj.state != ObjectState.FRESH and obj.is_overdue(now),
                "last_error": obj.last_error,
            })
        return report

    # ------------------------------------------------------------------
    # Periodic driver
    # ------------------------------------------------------------------

    async def _scheduled_tick(self):
        """
        Job wrapper so the driver never dies on a bad tick.

        Only plans and dispatches: backend calls run in the tracked refresh
        tasks, so a long refresh never holds up the next tick.
        """
        try:
            await self.dispatch()
        except Exception:
            logger.exception("Refresh tick crashed")

    def start(self, interval_seconds: int):
        """Start ticking on a fixed interval"""
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id="refresh_tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Refresh scheduler started (every {interval_seconds}s)")

    @property
    def in_flight(self) -> List[str]:
        """Ids of objects whose pass has not finished"""
        return sorted(self._pending)

    async def stop(self):
        """Stop ticking and cancel in-flight refreshes (objects stay stale)"""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        in_flight = list(self._in_flight)
        for task in in_flight:
            task.cancel()
        passes = list(self._passes)
        if in_flight or passes:
            await asyncio.gather(*in_flight, *passes, return_exceptions=True)
        logger.info("Refresh scheduler stopped")
