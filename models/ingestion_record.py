from sqlalchemy import Column, Integer, BigInteger, String, Enum, Text, Index
from models.base import Base, IngestionOutcome, UTCDateTime
from core.timeutils import utcnow


class IngestionRecord(Base):
    """
    Ledger entry for one file of one source location.

    Purpose:
    - Idempotent ingestion (re-delivered events are no-ops)
    - Integrity check on re-delivered paths (checksum comparison)
    - Audit trail of every file ever seen; rows are never deleted
    - Retry sweeps over failed files

    Design:
    - One row per (source_id, file_path); the unique index is what makes
      "at most one succeeded record per file" hold across processes
    - outcome moves pending -> succeeded | failed, failed -> succeeded on retry
    """
    __tablename__ = "ingestion_records"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # File identification
    source_id = Column(String(100), nullable=False, index=True)
    file_path = Column(String(1024), nullable=False)
    checksum = Column(String(128), nullable=True)

    # Outcome
    outcome = Column(Enum(IngestionOutcome), default=IngestionOutcome.PENDING, nullable=False, index=True)
    row_count = Column(BigInteger, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    error_detail = Column(Text, nullable=True)

    # Timestamps
    first_seen_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    ingested_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_ingestion_source_path", "source_id", "file_path", unique=True),
        Index("idx_ingestion_outcome_updated", "outcome", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<IngestionRecord id={self.id} source={self.source_id} "
            f"path={self.file_path} outcome={self.outcome}>"
        )
