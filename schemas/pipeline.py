"""
Pydantic schemas for the pipeline topology: source locations, file events,
derived objects and scheduled jobs.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import unquote_plus
import enum
import json
import re

from core.timeutils import ensure_utc, utcnow


# ============================================================================
# Source Locations
# ============================================================================

class FileFormatType(str, enum.Enum):
    CSV = "CSV"
    JSON = "JSON"
    PARQUET = "PARQUET"


class FileFormat(BaseModel):
    """How files of a source location are parsed and mapped onto the raw table"""
    type: FileFormatType = FileFormatType.CSV
    field_delimiter: str = ","
    skip_header: int = Field(default=0, ge=0)
    match_by_column_name: bool = False
    # raw table column -> file column / JSON path
    column_mapping: Dict[str, str] = Field(default_factory=dict)

    @validator("type", pre=True)
    def upper_type(cls, v):
        return v.upper() if isinstance(v, str) else v

    class Config:
        frozen = True


class SourceLocation(BaseModel):
    """
    An addressable origin of files (URI prefix) loaded into one raw table.

    Immutable once registered.
    """
    source_id: str = Field(..., min_length=1, max_length=100)
    uri_prefix: str = Field(..., min_length=1)
    target_table: str = Field(..., min_length=1)
    file_format: FileFormat = Field(default_factory=FileFormat)

    class Config:
        frozen = True

    def matches(self, path: str) -> bool:
        return path.startswith(self.uri_prefix)


# ============================================================================
# File Events
# ============================================================================

class FileEvent(BaseModel):
    """A storage notification for one candidate file"""
    path: str = Field(..., min_length=1)
    size: Optional[int] = Field(None, ge=0)
    event_time: datetime = Field(default_factory=utcnow)
    checksum: Optional[str] = None

    @validator("event_time")
    def event_time_utc(cls, v):
        return ensure_utc(v)

    @validator("checksum")
    def strip_etag_quotes(cls, v):
        if v is not None:
            v = v.strip('"') or None
        return v

    @classmethod
    def from_s3_notification(cls, payload: Dict[str, Any]) -> List["FileEvent"]:
        """
        Parse an S3-style event notification (as delivered directly or
        wrapped in an SNS/SQS message body) into file events.
        Non-create events are ignored.

        Raises:
            ValueError: the payload is not shaped like a notification
        """
        if isinstance(payload, dict) and isinstance(payload.get("Message"), str):
            payload = json.loads(payload["Message"])
        if not isinstance(payload, dict):
            raise ValueError("Notification must be a JSON object")

        records = payload.get("Records", [])
        if not isinstance(records, list):
            raise ValueError("Records must be a list")

        events = []
        for index, record in enumerate(records):
            if not isinstance(record, dict):
                raise ValueError(f"Record {index} must be an object")
            event_name = record.get("eventName", "ObjectCreated")
            if not isinstance(event_name, str) or not event_name.startswith("ObjectCreated"):
                continue

            s3 = record.get("s3", {})
            bucket = s3.get("bucket", {}) if isinstance(s3, dict) else None
            obj = s3.get("object", {}) if isinstance(s3, dict) else None
            if not isinstance(bucket, dict) or not isinstance(obj, dict):
                raise ValueError(f"Record {index} has a malformed s3 section")
            bucket = bucket.get("name")
            key = obj.get("key", "")
            if not isinstance(key, str):
                raise ValueError(f"Record {index} has a non-string object key")
            key = unquote_plus(key)
            if not key:
                continue

            events.append(cls(
                path=f"s3://{bucket}/{key}" if bucket else key,
                size=obj.get("size"),
                event_time=record.get("eventTime") or utcnow(),
                checksum=obj.get("eTag")
            ))
        return events


# ============================================================================
# Derived Objects
# ============================================================================

_LAG_PATTERN = re.compile(
    r"^\s*(\d+)\s*(second|seconds|minute|minutes|hour|hours|day|days)\s*$",
    re.IGNORECASE
)


def parse_lag(value: Any) -> timedelta:
    """
    Parse a staleness budget: a timedelta, a number of seconds, or a
    warehouse-style target lag string such as '1 day' or '30 minutes'.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    match = _LAG_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid staleness budget: {value!r}")

    amount, unit = int(match.group(1)), match.group(2).lower().rstrip("s")
    return timedelta(**{f"{unit}s": amount})


class DerivedObjectConfig(BaseModel):
    """A staged table, aggregate or summary refreshed from its upstreams"""
    object_id: str = Field(..., min_length=1)
    definition: str = Field(..., min_length=1)
    upstream_ids: List[str] = Field(..., min_length=1)
    staleness_budget: timedelta

    @validator("staleness_budget", pre=True)
    def parse_budget(cls, v):
        return parse_lag(v)


# ============================================================================
# Scheduled Jobs
# ============================================================================

class JobAction(str, enum.Enum):
    REFRESH = "refresh"
    REFRESH_TICK = "refresh_tick"
    MAINTENANCE = "maintenance"
    RETRY_FAILED_INGESTIONS = "retry_failed_ingestions"


class ScheduledJobConfig(BaseModel):
    job_id: str = Field(..., min_length=1)
    schedule: str = Field(..., min_length=1, description="'USING CRON <expr> <tz>' or '<n> MINUTES'")
    action: JobAction
    target: Optional[str] = Field(None, description="Derived object id for refresh jobs")
    statement: Optional[str] = Field(None, description="Statement for maintenance jobs")
    escalation_target: Optional[str] = None

    @validator("target", always=True)
    def require_target(cls, v, values):
        if values.get("action") == JobAction.REFRESH and not v:
            raise ValueError("refresh jobs require a target")
        return v

    @validator("statement", always=True)
    def require_statement(cls, v, values):
        if values.get("action") == JobAction.MAINTENANCE and not v:
            raise ValueError("maintenance jobs require a statement")
        return v


# ============================================================================
# Pipeline
# ============================================================================

class PipelineConfig(BaseModel):
    sources: List[SourceLocation] = Field(default_factory=list)
    derived_objects: List[DerivedObjectConfig] = Field(default_factory=list)
    jobs: List[ScheduledJobConfig] = Field(default_factory=list)
    # escalation target name -> webhook URL
    alert_webhooks: Dict[str, str] = Field(default_factory=dict)


def load_pipeline_config(path: str) -> PipelineConfig:
    """Load and validate a pipeline topology file (JSON)"""
    with Path(path).open() as f:
        return PipelineConfig(**json.load(f))
