"""
Pydantic schemas for configuration validation and API serialization.

Schemas:
    pipeline: Pipeline topology (source locations, file formats, derived
        objects, scheduled jobs) and storage file events
    api: API endpoint response schemas

Usage:
    from schemas.pipeline import load_pipeline_config, FileEvent
    from schemas.api import ObjectsResponse

Example:
    location = SourceLocation(
        source_id="orders",
        uri_prefix="s3://landing/orders/",
        target_table="raw.orders",
        file_format={"type": "csv", "skip_header": 1}
    )

    # Pydantic validates and normalizes the format type
    assert location.file_format.type == FileFormatType.CSV
"""

__all__ = [
    "SourceLocation",
    "FileFormat",
    "FileEvent",
    "DerivedObjectConfig",
    "ScheduledJobConfig",
    "PipelineConfig",
    "load_pipeline_config",
]
