# ============================================================================
# File: ingestion/worker.py
# Description: Ingestion worker pool with ledger-backed idempotency
# ============================================================================
"""
Ingestion Worker Pool - loads newly arrived files into raw tables.

This module provides:
- A bounded request queue (backpressure: full queue rejects new requests)
- Concurrent workers; at most one load per file path at any time
- Ledger-backed idempotency (re-delivered files are no-ops)
- Retry with exponential backoff for transient backend failures
- Staleness propagation to the dependency graph after each load
- Escalation of exhausted retries and integrity violations
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional
import enum
import logging

from core.alerts import Alerter, Severity
from core.exceptions import (
    DuplicateIngestion,
    IngestionBackpressure,
    PipelineException,
    RetryableError,
)
from core.locks import KeyedLock
from ingestion.backend import ExecutionBackend
from ingestion.ledger import IngestionLedger
from models.base import IngestionOutcome
from models.ingestion_record import IngestionRecord
from refresh.graph import DependencyGraph
from schemas.pipeline import FileEvent, SourceLocation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionRequest:
    location: SourceLocation
    event: FileEvent

    @property
    def key(self):
        return (self.location.source_id, self.event.path)

    @classmethod
    def from_record(cls, location: SourceLocation, record: IngestionRecord) -> "IngestionRequest":
        """Rebuild a request from a ledger record (retry sweeps)"""
        return cls(
            location=location,
            event=FileEvent(path=record.file_path, checksum=record.checksum)
        )


class IngestionStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    ALREADY_INGESTED = "already_ingested"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass
class IngestionResult:
    status: IngestionStatus
    source_id: str
    file_path: str
    record_id: Optional[int] = None
    row_count: Optional[int] = None
    attempts: int = 0
    error: Optional[PipelineException] = None


class IngestionWorkerPool:
    """
    Production ingestion workers.

    Responsibilities:
    - Consume ingestion requests from a bounded queue
    - Load each file exactly once (ledger) and never concurrently (path lock)
    - Retry transient backend errors, escalate permanent ones
    - Mark dependents of the raw table stale after a successful load
    """

    def __init__(
        self,
        ledger: IngestionLedger,
        backend: ExecutionBackend,
        graph: DependencyGraph,
        alerter: Optional[Alerter] = None,
        workers: int = 4,
        queue_size: int = 1000,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        self.ledger = ledger
        self.backend = backend
        self.graph = graph
        self.alerter = alerter or Alerter()
        self.worker_count = workers
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._file_locks = KeyedLock()
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def submit(self, request: IngestionRequest):
        """
        Enqueue a request without waiting.

        Raises:
            IngestionBackpressure: the queue is full; re-deliver later
        """
        try:
            self.queue.put_nowait(request)
        except asyncio.QueueFull:
            raise IngestionBackpressure(
                "Ingestion queue is full",
                context={
                    "source_id": request.location.source_id,
                    "file_path": request.event.path,
                    "queue_size": self.queue.maxsize
                }
            )

    @property
    def queue_depth(self) -> int:
        return self.queue.qsize()

    def start(self):
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"ingest-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Started {self.worker_count} ingestion workers")

    async def join(self):
        """Wait until every queued request has been processed"""
        await self.queue.join()

    async def stop(self):
        """Cancel workers; an interrupted load stays pending/failed in the ledger"""
        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Ingestion workers stopped")

    async def _worker_loop(self, index: int):
        while True:
            request = await self.queue.get()
            try:
                await self.ingest(request)
            except Exception:
                # ingest() reports its own failures; this guards the worker
                logger.exception(f"Worker {index} crashed on {request.event.path}")
            finally:
                self.queue.task_done()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, request: IngestionRequest) -> IngestionResult:
        """
        Ingest one file.

        Steps:
        1. Register in the ledger; an already succeeded file returns immediately
        2. Load through the execution backend (retrying transient failures)
        3. Record the outcome in the ledger
        4. Mark dependents of the raw table stale
        """
        location, event = request.location, request.event

        async with self._file_locks.hold(request.key):
            try:
                record = await self.ledger.record_seen(
                    location.source_id, event.path, event.checksum
                )
            except DuplicateIngestion as e:
                logger.error(e.message, extra={"error_context": e.to_dict()})
                await self.alerter.escalate(
                    Severity.CRITICAL, "ingestion", e.message, e.to_dict()
                )
                return IngestionResult(
                    status=IngestionStatus.DUPLICATE,
                    source_id=location.source_id,
                    file_path=event.path,
                    error=e
                )

            if record.outcome == IngestionOutcome.SUCCEEDED:
                logger.info(f"Already ingested: {location.source_id}:{event.path}")
                return IngestionResult(
                    status=IngestionStatus.ALREADY_INGESTED,
                    source_id=location.source_id,
                    file_path=event.path,
                    record_id=record.id,
                    row_count=record.row_count,
                    attempts=record.attempts
                )

            return await self._load_with_retry(request, record)

    async def _load_with_retry(
        self,
        request: IngestionRequest,
        record: IngestionRecord
    ) -> IngestionResult:
        location, event = request.location, request.event
        last_error: Optional[PipelineException] = None

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(f"Load attempt {attempt + 1}/{self.max_retries + 1} for {event.path}")
                row_count = await self.backend.load(location, event.path)

            except Exception as e:
                last_error = e if isinstance(e, PipelineException) else PipelineException(
                    "Unexpected error during load",
                    context={"source_id": location.source_id, "file_path": event.path},
                    original_exception=e
                )
                await self.ledger.mark_failed(record.id, str(last_error))

                if isinstance(e, RetryableError) and attempt < self.max_retries:
                    delay = self.retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Transient load failure for {event.path}, "
                        f"retrying in {delay:.2f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            else:
                record = await self.ledger.mark_succeeded(record.id, row_count)
                self.graph.mark_stale(location.target_table, at=record.ingested_at)
                logger.info(
                    f"Ingested {event.path} into {location.target_table}: {row_count} rows"
                )
                return IngestionResult(
                    status=IngestionStatus.SUCCEEDED,
                    source_id=location.source_id,
                    file_path=event.path,
                    record_id=record.id,
                    row_count=row_count,
                    attempts=attempt + 1
                )

        context = {
            "source_id": location.source_id,
            "file_path": event.path,
            "target_table": location.target_table,
            "record_id": record.id,
            "attempts": attempt + 1,
            "error": last_error.to_dict() if last_error else None
        }
        logger.error(f"Giving up on {event.path} after {attempt + 1} attempts", extra={"error_context": context})
        await self.alerter.escalate(
            Severity.ERROR, "ingestion", f"Ingestion of {event.path} failed", context
        )
        return IngestionResult(
            status=IngestionStatus.FAILED,
            source_id=location.source_id,
            file_path=event.path,
            record_id=record.id,
            attempts=attempt + 1,
            error=last_error
        )
