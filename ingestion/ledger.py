"""
Ingestion ledger: durable record of which source files have been ingested.

Every mutation runs in its own session and is committed before the method
returns, so a crash after mark_succeeded never re-triggers the same file.
"""

from typing import Dict, List, Optional
from datetime import datetime
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
import logging

from core.exceptions import DuplicateIngestion, UnknownObject
from core.locks import KeyedLock
from core.timeutils import utcnow
from models.base import IngestionOutcome
from models.ingestion_record import IngestionRecord

logger = logging.getLogger(__name__)


class IngestionLedger:
    """
    Owns IngestionRecords.

    Responsibilities:
    - Idempotent first-sight registration of files
    - Integrity check of re-delivered paths against the succeeded checksum
    - Outcome tracking (pending / succeeded / failed) with attempt counts
    - Queries for retry sweeps and backlog reporting
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.SessionLocal = session_factory
        self._path_locks = KeyedLock()
        self._record_locks = KeyedLock()

    async def record_seen(
        self,
        source_id: str,
        file_path: str,
        checksum: Optional[str] = None
    ) -> IngestionRecord:
        """
        Register a file, or return its existing record.

        Raises:
            DuplicateIngestion: the path already succeeded with a different checksum
        """
        async with self._path_locks.hold((source_id, file_path)):
            async with self.SessionLocal() as session:
                record = await self._find(session, source_id, file_path)

                if record is None:
                    record = IngestionRecord(
                        source_id=source_id,
                        file_path=file_path,
                        checksum=checksum,
                        outcome=IngestionOutcome.PENDING,
                        attempts=0,
                        first_seen_at=utcnow(),
                        updated_at=utcnow()
                    )
                    session.add(record)
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Another process registered the file first
                        await session.rollback()
                        record = await self._find(session, source_id, file_path)
                    else:
                        logger.debug(f"Ledger: first sight of {source_id}:{file_path}")
                        return record

                if checksum and record.checksum and record.checksum != checksum:
                    if record.outcome == IngestionOutcome.SUCCEEDED:
                        raise DuplicateIngestion(
                            f"File {file_path} already ingested with a different checksum",
                            context={
                                "source_id": source_id,
                                "file_path": file_path,
                                "record_id": record.id,
                                "existing_checksum": record.checksum,
                                "new_checksum": checksum
                            }
                        )
                    # Not yet loaded: the newest content is what gets loaded
                    record.checksum = checksum
                    record.updated_at = utcnow()
                    await session.commit()
                elif checksum and not record.checksum and record.outcome != IngestionOutcome.SUCCEEDED:
                    record.checksum = checksum
                    record.updated_at = utcnow()
                    await session.commit()

                return record

    async def mark_succeeded(self, record_id: int, row_count: int) -> IngestionRecord:
        """Record a successful load"""
        async with self._record_locks.hold(record_id):
            async with self.SessionLocal() as session:
                record = await self._get_or_raise(session, record_id)
                now = utcnow()
                record.outcome = IngestionOutcome.SUCCEEDED
                record.row_count = row_count
                record.attempts += 1
                record.error_detail = None
                record.ingested_at = now
                record.updated_at = now
                await session.commit()

                logger.info(
                    f"Ledger: {record.source_id}:{record.file_path} succeeded "
                    f"({row_count} rows, attempt {record.attempts})"
                )
                return record

    async def mark_failed(self, record_id: int, error_detail: str) -> IngestionRecord:
        """Record a failed load attempt"""
        async with self._record_locks.hold(record_id):
            async with self.SessionLocal() as session:
                record = await self._get_or_raise(session, record_id)
                if record.outcome == IngestionOutcome.SUCCEEDED:
                    # A late failure report never downgrades a completed load
                    logger.warning(
                        f"Ledger: ignoring failure for already ingested record {record_id}"
                    )
                    return record

                record.outcome = IngestionOutcome.FAILED
                record.attempts += 1
                record.error_detail = error_detail
                record.updated_at = utcnow()
                await session.commit()

                logger.warning(
                    f"Ledger: {record.source_id}:{record.file_path} failed "
                    f"(attempt {record.attempts}): {error_detail}"
                )
                return record

    async def is_processed(self, source_id: str, file_path: str) -> bool:
        async with self.SessionLocal() as session:
            record = await self._find(session, source_id, file_path)
            return record is not None and record.outcome == IngestionOutcome.SUCCEEDED

    async def get(self, record_id: int) -> Optional[IngestionRecord]:
        async with self.SessionLocal() as session:
            return await session.get(IngestionRecord, record_id)

    async def list_records(
        self,
        outcome: Optional[IngestionOutcome] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        source_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[IngestionRecord]:
        """
        List records filtered by outcome, last update time range and source.

        Used by retry sweeps (failed records in a window) and the status surface.
        """
        query = select(IngestionRecord)
        if outcome is not None:
            query = query.where(IngestionRecord.outcome == outcome)
        if since is not None:
            query = query.where(IngestionRecord.updated_at >= since)
        if until is not None:
            query = query.where(IngestionRecord.updated_at < until)
        if source_id is not None:
            query = query.where(IngestionRecord.source_id == source_id)
        query = query.order_by(IngestionRecord.updated_at.desc(), IngestionRecord.id.desc())
        if limit is not None:
            query = query.limit(limit)

        async with self.SessionLocal() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def backlog(self) -> Dict[str, int]:
        """Count of not-yet-ingested (pending or failed) files per source"""
        query = (
            select(IngestionRecord.source_id, func.count())
            .where(IngestionRecord.outcome != IngestionOutcome.SUCCEEDED)
            .group_by(IngestionRecord.source_id)
        )
        async with self.SessionLocal() as session:
            result = await session.execute(query)
            return {source_id: count for source_id, count in result.all()}

    async def _find(self, session, source_id: str, file_path: str) -> Optional[IngestionRecord]:
        result = await session.execute(
            select(IngestionRecord).where(
                IngestionRecord.source_id == source_id,
                IngestionRecord.file_path == file_path
            )
        )
        return result.scalar_one_or_none()

    async def _get_or_raise(self, session, record_id: int) -> IngestionRecord:
        record = await session.get(IngestionRecord, record_id)
        if record is None:
            raise UnknownObject(
                f"Ingestion record {record_id} does not exist",
                context={"record_id": record_id}
            )
        return record
