"""
Built-in job actions.

Each factory returns a zero-argument coroutine function suitable for
ScheduledJob.action. Actions raise on failure so the task runner records
and escalates it.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from core.exceptions import ConfigurationError, RefreshFailed
from core.timeutils import utcnow
from ingestion.backend import ExecutionBackend
from ingestion.ledger import IngestionLedger
from ingestion.listener import FileNotificationListener
from ingestion.worker import IngestionRequest, IngestionWorkerPool
from models.base import IngestionOutcome
from refresh.scheduler import RefreshScheduler
from schemas.pipeline import JobAction, ScheduledJobConfig
from tasks.runner import ScheduledJob
from tasks.triggers import parse_schedule

logger = logging.getLogger(__name__)


def refresh_object_action(scheduler: RefreshScheduler, object_id: str):
    async def action():
        result = await scheduler.refresh_now([object_id])
        if object_id in result.failed:
            obj = scheduler.graph.get(object_id)
            raise RefreshFailed(
                f"Refresh of {object_id} failed",
                context={"object_id": object_id, "error": obj.last_error}
            )
        if object_id not in result.refreshed:
            raise RefreshFailed(
                f"{object_id} was not refreshed",
                context={
                    "object_id": object_id,
                    "failed": result.failed,
                    "skipped": result.skipped
                }
            )
        return result
    return action


def refresh_tick_action(scheduler: RefreshScheduler):
    async def action():
        return await scheduler.tick()
    return action


def maintenance_action(backend: ExecutionBackend, statement: str):
    async def action():
        await backend.execute(statement)
    return action


def retry_failed_ingestions_action(
    ledger: IngestionLedger,
    pool: IngestionWorkerPool,
    listener: FileNotificationListener,
    window: Optional[timedelta] = None
):
    """
    Resubmit failed ledger records to the worker pool.

    With a window, only records that last failed within it are swept.
    """
    async def action():
        since: Optional[datetime] = utcnow() - window if window else None
        records = await ledger.list_records(outcome=IngestionOutcome.FAILED, since=since)

        resubmitted = 0
        for record in records:
            location = listener.get_source(record.source_id)
            if location is None:
                logger.warning(
                    f"Cannot retry {record.file_path}: source {record.source_id} is not registered"
                )
                continue
            # Queue backpressure propagates; the next sweep picks up the rest
            pool.submit(IngestionRequest.from_record(location, record))
            resubmitted += 1

        logger.info(f"Resubmitted {resubmitted} failed ingestions")
        return resubmitted
    return action


def build_job(
    config: ScheduledJobConfig,
    scheduler: RefreshScheduler,
    backend: ExecutionBackend,
    ledger: IngestionLedger,
    pool: IngestionWorkerPool,
    listener: FileNotificationListener
) -> ScheduledJob:
    """Build a ScheduledJob from its declarative configuration"""
    if config.action == JobAction.REFRESH:
        if config.target not in scheduler.graph:
            raise ConfigurationError(
                f"Job {config.job_id} targets unknown object {config.target}",
                context={"job_id": config.job_id, "target": config.target}
            )
        action = refresh_object_action(scheduler, config.target)
        description = f"Refresh {config.target}"
    elif config.action == JobAction.REFRESH_TICK:
        action = refresh_tick_action(scheduler)
        description = "Refresh pass"
    elif config.action == JobAction.MAINTENANCE:
        action = maintenance_action(backend, config.statement)
        description = config.statement
    else:
        action = retry_failed_ingestions_action(ledger, pool, listener)
        description = "Retry failed ingestions"

    return ScheduledJob(
        job_id=config.job_id,
        schedule=parse_schedule(config.schedule),
        action=action,
        escalation_target=config.escalation_target,
        description=description
    )
