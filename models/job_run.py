from sqlalchemy import Column, BigInteger, Integer, String, Enum, Float, Text, Index
from models.base import Base, JobRunStatus, UTCDateTime
from core.timeutils import utcnow


class JobRun(Base):
    """
    Tracks each occurrence of a scheduled job.

    Purpose:
    - Audit trail of job executions and skipped (overlapping) occurrences
    - Failure history for escalation follow-up
    """
    __tablename__ = "job_runs"

    # BIGINT does not autoincrement on SQLite
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    job_id = Column(String(100), nullable=False, index=True)
    status = Column(Enum(JobRunStatus), default=JobRunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    scheduled_for = Column(UTCDateTime, nullable=True)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(UTCDateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_job_run_job_started", "job_id", "started_at"),
    )
