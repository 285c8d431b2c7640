"""
File Notification Listener - turns storage events into ingestion requests.

The listener never loads anything itself: it resolves the event to a
registered source location, drops files the ledger already knows as
ingested, and hands the rest to the worker pool.
"""

from typing import Any, Dict, List, Optional
import enum
import logging

from core.exceptions import (
    ConfigurationError,
    IngestionBackpressure,
    UnregisteredSource,
)
from ingestion.ledger import IngestionLedger
from ingestion.worker import IngestionRequest, IngestionWorkerPool
from schemas.pipeline import FileEvent, SourceLocation

logger = logging.getLogger(__name__)


class ListenerDecision(str, enum.Enum):
    ENQUEUED = "enqueued"
    ALREADY_PROCESSED = "already_processed"
    UNREGISTERED = "unregistered"
    REJECTED = "rejected"


class FileNotificationListener:
    """Routes file events to the ingestion worker pool"""

    def __init__(self, ledger: IngestionLedger, pool: IngestionWorkerPool):
        self.ledger = ledger
        self.pool = pool
        self._sources: Dict[str, SourceLocation] = {}

    def register_source(self, location: SourceLocation) -> SourceLocation:
        if location.source_id in self._sources:
            raise ConfigurationError(
                f"Source {location.source_id} is already registered",
                context={"source_id": location.source_id}
            )
        self._sources[location.source_id] = location
        logger.info(
            f"Registered source {location.source_id}: "
            f"{location.uri_prefix} -> {location.target_table}"
        )
        return location

    def sources(self) -> List[SourceLocation]:
        return sorted(self._sources.values(), key=lambda s: s.source_id)

    def get_source(self, source_id: str) -> Optional[SourceLocation]:
        return self._sources.get(source_id)

    def resolve(self, path: str) -> Optional[SourceLocation]:
        """Source location with the longest prefix matching path"""
        matches = [s for s in self._sources.values() if s.matches(path)]
        if not matches:
            return None
        return max(matches, key=lambda s: len(s.uri_prefix))

    async def handle(self, event: FileEvent) -> ListenerDecision:
        location = self.resolve(event.path)
        if location is None:
            error = UnregisteredSource(
                f"No source location matches {event.path}",
                context={"path": event.path}
            )
            logger.warning(error.message, extra={"error_context": error.to_dict()})
            return ListenerDecision.UNREGISTERED

        if await self.ledger.is_processed(location.source_id, event.path):
            logger.debug(f"Skipping already ingested file {event.path}")
            return ListenerDecision.ALREADY_PROCESSED

        try:
            self.pool.submit(IngestionRequest(location=location, event=event))
        except IngestionBackpressure as e:
            logger.warning(f"{e.message}; {event.path} left for re-delivery")
            return ListenerDecision.REJECTED

        logger.info(f"Queued {event.path} for source {location.source_id}")
        return ListenerDecision.ENQUEUED

    async def handle_notification(self, payload: Dict[str, Any]) -> List[Dict[str, str]]:
        """Handle every file event in an S3-style notification body"""
        results = []
        for event in FileEvent.from_s3_notification(payload):
            decision = await self.handle(event)
            results.append({"path": event.path, "decision": decision.value})
        return results
