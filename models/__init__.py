"""
SQLAlchemy ORM models for the ledger store.

Models:
    base: Base declarative class, UTCDateTime type and shared enums
        (IngestionOutcome, JobRunStatus)
    ingestion_record: One row per (source location, file path); the ingestion ledger
    job_run: Audit trail of scheduled job occurrences

Usage:
    from models.ingestion_record import IngestionRecord
    from models.base import IngestionOutcome

Derived objects and scheduled jobs are owned in memory by the dependency
graph and the task runner; only the ledger and job history are persisted.
"""

__all__ = [
    "Base",
    "UTCDateTime",
    "IngestionOutcome",
    "JobRunStatus",
    "IngestionRecord",
    "JobRun",
]
