"""
Auto-ingest components: from storage notification to loaded raw table.

Modules:
    ledger: Durable record of ingested files (idempotency and integrity)
    listener: Resolves file events to source locations and queues them
    worker: Bounded queue and workers that load files with retry
    backend: Execution backend (warehouse) interface and SQL implementation

Flow:
    1. A storage notification reaches FileNotificationListener.handle
    2. Files already in the ledger as succeeded are dropped
    3. The IngestionWorkerPool loads the file through the ExecutionBackend
    4. The ledger records the outcome and dependents of the raw table are
       marked stale in the dependency graph

Usage:
    from ingestion.ledger import IngestionLedger
    from ingestion.listener import FileNotificationListener
    from ingestion.worker import IngestionWorkerPool
    from ingestion.backend import SQLBackend

Error Handling:
    Transient backend failures (BackendUnavailable) are retried with
    exponential backoff; everything else is recorded in the ledger and
    escalated through core.alerts.
"""

__all__ = [
    "IngestionLedger",
    "FileNotificationListener",
    "ListenerDecision",
    "IngestionWorkerPool",
    "IngestionRequest",
    "IngestionResult",
    "ExecutionBackend",
    "SQLBackend",
]
