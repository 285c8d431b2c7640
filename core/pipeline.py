"""
Pipeline wiring: builds the listener, worker pool, dependency graph, refresh
scheduler and task runner from settings and a topology config, and owns
their start/stop lifecycle.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.alerts import Alerter, WebhookAlertSink
from core.config import Settings
from core.database import create_engine, create_session_factory, create_tables
from ingestion.backend import ExecutionBackend, SQLBackend
from ingestion.ledger import IngestionLedger
from ingestion.listener import FileNotificationListener
from ingestion.worker import IngestionWorkerPool
from refresh.graph import DependencyGraph, DerivedObject
from refresh.scheduler import RefreshScheduler
from schemas.pipeline import PipelineConfig
from tasks.jobs import build_job
from tasks.runner import TaskRunner

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    settings: Settings
    alerter: Alerter
    backend: ExecutionBackend
    ledger: IngestionLedger
    graph: DependencyGraph
    pool: IngestionWorkerPool
    listener: FileNotificationListener
    refresh_scheduler: RefreshScheduler
    task_runner: TaskRunner
    engine: Optional[AsyncEngine] = None
    started: bool = False

    async def start(self, drivers: bool = True):
        """
        Start the worker pool and, unless drivers is False, the periodic
        refresh and task drivers.
        """
        if self.started:
            return
        self.pool.start()
        if drivers:
            self.refresh_scheduler.start(self.settings.REFRESH_TICK_SECONDS)
            self.task_runner.start(self.settings.TASK_TICK_SECONDS)
        self.started = True
        logger.info("Pipeline started")

    async def stop(self):
        """Stop drivers first so nothing new is dispatched, then workers"""
        if not self.started:
            return
        await self.task_runner.stop()
        await self.refresh_scheduler.stop()
        await self.pool.stop()
        await self.backend.close()
        if self.engine is not None:
            await self.engine.dispose()
        self.started = False
        logger.info("Pipeline stopped")


async def build_pipeline(
    settings: Settings,
    config: PipelineConfig,
    backend: Optional[ExecutionBackend] = None,
    session_factory: Optional[async_sessionmaker] = None
) -> Pipeline:
    """
    Assemble a pipeline.

    Without a session_factory the ledger store at settings.DATABASE_URL is
    used and its tables are created if missing.

    Raises:
        ConfigurationError: invalid topology (duplicate ids, cycles, unknown
            job targets, bad schedules)
    """
    engine = None
    if session_factory is None:
        engine = create_engine(settings.DATABASE_URL)
        await create_tables(engine)
        session_factory = create_session_factory(engine)

    alerter = Alerter()
    if settings.ALERT_WEBHOOK_URL:
        alerter.add_sink("webhook", WebhookAlertSink(settings.ALERT_WEBHOOK_URL))
        alerter.default = "webhook"
    for name, url in config.alert_webhooks.items():
        alerter.add_sink(name, WebhookAlertSink(url))

    backend = backend or SQLBackend(timeout=settings.BACKEND_TIMEOUT_SECONDS)
    ledger = IngestionLedger(session_factory)

    graph = DependencyGraph()
    graph.register_many([
        DerivedObject(
            object_id=obj.object_id,
            definition=obj.definition,
            upstream_ids=tuple(obj.upstream_ids),
            staleness_budget=obj.staleness_budget
        )
        for obj in config.derived_objects
    ])

    pool = IngestionWorkerPool(
        ledger,
        backend,
        graph,
        alerter,
        workers=settings.INGEST_WORKERS,
        queue_size=settings.INGEST_QUEUE_SIZE,
        max_retries=settings.MAX_RETRIES,
        retry_delay=settings.RETRY_DELAY_SECONDS
    )

    listener = FileNotificationListener(ledger, pool)
    for location in config.sources:
        listener.register_source(location)

    refresh_scheduler = RefreshScheduler(graph, backend, alerter)

    task_runner = TaskRunner(alerter, session_factory)
    for job_config in config.jobs:
        task_runner.schedule(
            build_job(job_config, refresh_scheduler, backend, ledger, pool, listener)
        )

    logger.info(
        f"Pipeline built: {len(config.sources)} sources, "
        f"{len(config.derived_objects)} derived objects, {len(config.jobs)} jobs"
    )
    return Pipeline(
        settings=settings,
        alerter=alerter,
        backend=backend,
        ledger=ledger,
        graph=graph,
        pool=pool,
        listener=listener,
        refresh_scheduler=refresh_scheduler,
        task_runner=task_runner,
        engine=engine
    )
