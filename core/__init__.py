"""
Core utilities and configuration for the auto-ingest pipeline.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Ledger store engine and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    alerts: Alert sinks and escalation routing
    locks: Per-key mutual exclusion
    timeutils: UTC time helpers
    pipeline: Wiring of listener, workers, graph, scheduler and task runner

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_factory
    from core.exceptions import DuplicateIngestion, BackendUnavailable
    from core.logging import setup_logging

Example:
    setup_logging()
    pipeline = await build_pipeline(settings, load_pipeline_config(path))
    await pipeline.start()
"""

__all__ = [
    "settings",
    "setup_logging",
    # Exceptions
    "PipelineException",
    "RetryableError",
    "NonRetryableError",
    "IngestionError",
    "DuplicateIngestion",
    "UnregisteredSource",
    "IngestionBackpressure",
    "BackendError",
    "BackendUnavailable",
    "ConfigurationError",
    "CyclicDependency",
    "UnknownObject",
    "RefreshFailed",
    "JobSkippedOverlap",
]
