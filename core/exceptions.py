"""
Custom exceptions for the ingestion and refresh pipeline with structured error context.

Each exception carries a message, a context dictionary and (optionally) the
original exception, so failures can be logged, stored on the owning entity
and forwarded to the alert sink with the same payload.

Exception Hierarchy:
    PipelineException (base)
    ├── IngestionError
    │   ├── DuplicateIngestion
    │   ├── UnregisteredSource
    │   └── IngestionBackpressure
    ├── BackendError
    │   └── BackendUnavailable
    ├── ConfigurationError
    │   ├── CyclicDependency
    │   └── UnknownObject
    ├── RefreshFailed
    ├── JobSkippedOverlap
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any

from core.timeutils import utcnow


class PipelineException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, object, job, ...)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Warehouse connection drops and timeouts
    - Ingestion queue saturation
    """


class NonRetryableError(PipelineException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Checksum conflicts on already ingested files
    - Invalid pipeline configuration
    - Statements rejected by the warehouse
    """


# ============================================================================
# Ingestion Errors
# ============================================================================

class IngestionError(PipelineException):
    """Base exception for file ingestion failures."""


class DuplicateIngestion(NonRetryableError, IngestionError):
    """
    A file path that was already ingested successfully was seen again with a
    different checksum. This is a data integrity concern: it is surfaced and
    the existing ledger record is left untouched.

    Context should include:
        - source_id, file_path
        - existing_checksum, new_checksum
        - record_id
    """


class UnregisteredSource(NonRetryableError, IngestionError):
    """
    A file event whose path matches no registered source location.
    Recoverable: the event is logged and dropped.
    """


class IngestionBackpressure(RetryableError, IngestionError):
    """The ingestion queue is full; the event should be re-delivered later."""


# ============================================================================
# Execution Backend Errors
# ============================================================================

class BackendError(PipelineException):
    """
    The execution backend rejected a load or transform statement.

    Context should include:
        - operation: load / execute
        - statement: the statement (truncated if large)
    """


class BackendUnavailable(RetryableError, BackendError):
    """Transient backend failure (connectivity, timeout); retried with backoff."""


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """Invalid pipeline configuration; rejected at registration time."""


class CyclicDependency(ConfigurationError):
    """
    Registering a set of derived objects would create a dependency cycle.
    Registration is rejected as a whole.

    Context should include:
        - cycle: the offending path of object ids
    """


class UnknownObject(ConfigurationError):
    """A derived object, job or ledger record that does not exist."""


# ============================================================================
# Refresh / Task Errors
# ============================================================================

class RefreshFailed(PipelineException):
    """
    A derived object's refresh failed. Non-fatal: the object is retried on
    the next scheduler tick and the failure is escalated.
    """


class JobSkippedOverlap(PipelineException):
    """Informational: a job occurrence was skipped because the job was still running."""
