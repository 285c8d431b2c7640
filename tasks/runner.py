"""
Task Runner - supervised execution of scheduled jobs.

Guarantees:
- A failing job never stops the runner or other jobs; the failure is
  recorded as the job's last outcome and escalated to its target
- Jobs are not re-entrant: an occurrence that comes due while the previous
  one is still running is skipped and logged, never queued
- run_due only dispatches; job actions run as tasks tracked in flight
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
import enum
import logging
import time

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.alerts import Alerter, Severity
from core.exceptions import ConfigurationError, JobSkippedOverlap, UnknownObject
from core.timeutils import utcnow
from models.base import JobRunStatus
from models.job_run import JobRun
from tasks.triggers import Schedule

logger = logging.getLogger(__name__)

JobAction = Callable[[], Awaitable[Any]]


class JobOutcome(str, enum.Enum):
    NEVER_RUN = "never_run"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ScheduledJob:
    job_id: str
    schedule: Schedule
    action: JobAction
    escalation_target: Optional[str] = None
    description: str = ""
    last_run_at: Optional[datetime] = None
    last_outcome: JobOutcome = JobOutcome.NEVER_RUN
    last_error: Optional[str] = None
    next_fire_at: Optional[datetime] = None
    run_count: int = 0
    skipped_count: int = 0
    running: bool = False


class TaskRunner:
    """Owns ScheduledJobs and executes them when due"""

    def __init__(
        self,
        alerter: Optional[Alerter] = None,
        session_factory: Optional[async_sessionmaker] = None
    ):
        self.alerter = alerter or Alerter()
        self.SessionLocal = session_factory
        self.jobs: Dict[str, ScheduledJob] = {}
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: Dict[str, asyncio.Task] = {}

    def schedule(self, job: ScheduledJob, now: Optional[datetime] = None) -> ScheduledJob:
        if job.job_id in self.jobs:
            raise ConfigurationError(
                f"Job {job.job_id} is already scheduled", context={"job_id": job.job_id}
            )
        job.next_fire_at = job.schedule.next_fire_time(now or utcnow())
        self.jobs[job.job_id] = job
        logger.info(f"Scheduled job {job.job_id} ({job.schedule!r}), next run {job.next_fire_at}")
        return job

    def get(self, job_id: str) -> ScheduledJob:
        try:
            return self.jobs[job_id]
        except KeyError:
            raise UnknownObject(f"Job {job_id} is not scheduled", context={"job_id": job_id})

    async def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Dispatch every job whose fire time has arrived.

        Returns:
            Ids of jobs started by this call
        """
        now = now or utcnow()
        started = []

        for job in list(self.jobs.values()):
            if job.next_fire_at is None or job.next_fire_at > now:
                continue

            scheduled_for = job.next_fire_at
            # Missed occurrences collapse into this one
            job.next_fire_at = job.schedule.next_fire_time(now)

            if job.running:
                skip = JobSkippedOverlap(
                    f"Job {job.job_id} still running; occurrence skipped",
                    context={"job_id": job.job_id, "scheduled_for": scheduled_for.isoformat()}
                )
                job.skipped_count += 1
                logger.warning(skip.message, extra={"error_context": skip.to_dict()})
                await self._record_run(job.job_id, JobRunStatus.SKIPPED, scheduled_for, now, now)
                continue

            job.running = True
            job.last_run_at = now
            job.last_outcome = JobOutcome.RUNNING
            task = asyncio.create_task(
                self._execute(job, scheduled_for), name=f"job:{job.job_id}"
            )
            self._in_flight[job.job_id] = task
            started.append(job.job_id)

        return started

    async def run_now(self, job_id: str) -> ScheduledJob:
        """Execute a job immediately and wait for it (manual trigger)"""
        job = self.get(job_id)
        if job.running:
            raise JobSkippedOverlap(
                f"Job {job_id} is already running", context={"job_id": job_id}
            )
        job.running = True
        job.last_run_at = utcnow()
        job.last_outcome = JobOutcome.RUNNING
        task = asyncio.create_task(self._execute(job, None), name=f"job:{job_id}")
        self._in_flight[job_id] = task
        await task
        return job

    async def _execute(self, job: ScheduledJob, scheduled_for: Optional[datetime]):
        started_at = utcnow()
        start = time.perf_counter()
        logger.info(f"Job {job.job_id} started")

        try:
            await job.action()

        except asyncio.CancelledError:
            job.last_outcome = JobOutcome.CANCELLED
            job.last_error = "cancelled"
            logger.warning(f"Job {job.job_id} cancelled")
            await self._record_run(
                job.job_id, JobRunStatus.CANCELLED, scheduled_for, started_at, utcnow(),
                error_message="cancelled"
            )
            raise

        except Exception as e:
            job.last_outcome = JobOutcome.FAILED
            job.last_error = f"{type(e).__name__}: {e}"
            context = {
                "job_id": job.job_id,
                "error_type": type(e).__name__,
                "error_message": str(e),
                "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
            }
            logger.error(f"Job {job.job_id} failed: {e}", extra={"error_context": context})
            await self._record_run(
                job.job_id, JobRunStatus.FAILED, scheduled_for, started_at, utcnow(),
                error_message=job.last_error
            )
            await self.alerter.escalate(
                Severity.ERROR, "tasks", f"Job {job.job_id} failed", context,
                target=job.escalation_target
            )

        else:
            job.last_outcome = JobOutcome.SUCCEEDED
            job.last_error = None
            logger.info(f"Job {job.job_id} succeeded in {time.perf_counter() - start:.2f}s")
            await self._record_run(
                job.job_id, JobRunStatus.SUCCEEDED, scheduled_for, started_at, utcnow()
            )

        finally:
            job.running = False
            job.run_count += 1
            self._in_flight.pop(job.job_id, None)

    async def _record_run(
        self,
        job_id: str,
        status: JobRunStatus,
        scheduled_for: Optional[datetime],
        started_at: datetime,
        completed_at: datetime,
        error_message: Optional[str] = None
    ):
        """Persist a job run; history problems never fail the job"""
        if self.SessionLocal is None:
            return
        try:
            async with self.SessionLocal() as session:
                session.add(JobRun(
                    job_id=job_id,
                    status=status,
                    scheduled_for=scheduled_for,
                    started_at=started_at,
                    completed_at=completed_at,
                    duration_seconds=(completed_at - started_at).total_seconds(),
                    error_message=error_message
                ))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to record run of job {job_id}: {e}")

    async def wait_idle(self):
        """Wait for every in-flight job to finish"""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def status(self) -> List[Dict[str, Any]]:
        return [
            {
                "job_id": job.job_id,
                "schedule": repr(job.schedule),
                "description": job.description,
                "last_run_at": job.last_run_at,
                "last_outcome": job.last_outcome.value,
                "last_error": job.last_error,
                "next_fire_at": job.next_fire_at,
                "run_count": job.run_count,
                "skipped_count": job.skipped_count,
                "running": job.running,
            }
            for job in sorted(self.jobs.values(), key=lambda j: j.job_id)
        ]

    # ------------------------------------------------------------------
    # Periodic driver
    # ------------------------------------------------------------------

    async def _scheduled_run_due(self):
        try:
            await self.run_due()
        except Exception:
            logger.exception("Task runner tick crashed")

    def start(self, interval_seconds: int):
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._scheduled_run_due,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id="task_runner_tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Task runner started (every {interval_seconds}s)")

    async def stop(self):
        """Stop evaluating triggers and cancel running jobs"""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        in_flight = list(self._in_flight.values())
        for task in in_flight:
            task.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Task runner stopped")
