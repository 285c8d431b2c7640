from datetime import timezone
from sqlalchemy import DateTime
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator
import enum

Base = declarative_base()


# ============================================================================
# TYPES
# ============================================================================

class UTCDateTime(TypeDecorator):
    """
    Stores naive UTC, returns aware UTC.

    Keeps comparisons consistent on backends without timezone support
    (SQLite) while the application works with aware datetimes only.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ============================================================================
# ENUMS
# ============================================================================

class IngestionOutcome(str, enum.Enum):
    """Ledger outcome of a single source file"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobRunStatus(str, enum.Enum):
    """Outcome of one scheduled job occurrence"""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
