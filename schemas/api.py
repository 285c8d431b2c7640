"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from core.timeutils import utcnow
from models.base import IngestionOutcome


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    pipeline_started: bool
    failed_objects: int = 0
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if not values.get("pipeline_started", False):
            return "degraded"
        if values.get("failed_objects", 0):
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "pipeline_started": True,
                "failed_objects": 0
            }
        }


# ============================================================================
# Source Status Schemas
# ============================================================================

class SourceStatus(BaseModel):
    source_id: str
    uri_prefix: str
    target_table: str
    backlog: int = Field(0, description="Pending or failed files in the ledger")


class SourcesResponse(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    queue_depth: int
    sources: List[SourceStatus]


# ============================================================================
# Derived Object Status Schemas
# ============================================================================

class ObjectFreshness(BaseModel):
    """Freshness of a single derived object"""
    object_id: str
    state: str
    upstream_ids: List[str]
    staleness_budget_seconds: float
    last_refreshed_at: Optional[datetime]
    stale_since: Optional[datetime]
    age_seconds: Optional[float]
    overdue: bool
    last_error: Optional[str] = None


class ObjectsResponse(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    objects: List[ObjectFreshness]
    last_pass: Optional[Dict[str, Any]] = None

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "objects": [
                    {
                        "object_id": "daily_totals",
                        "state": "fresh",
                        "upstream_ids": ["raw.orders"],
                        "staleness_budget_seconds": 3600,
                        "last_refreshed_at": "2024-01-15T10:00:00Z",
                        "stale_since": None,
                        "age_seconds": 1800,
                        "overdue": False
                    }
                ]
            }
        }


# ============================================================================
# Job Status Schemas
# ============================================================================

class JobStatus(BaseModel):
    job_id: str
    schedule: str
    description: str = ""
    last_run_at: Optional[datetime]
    last_outcome: str
    last_error: Optional[str]
    next_fire_at: Optional[datetime]
    run_count: int
    skipped_count: int
    running: bool


class JobsResponse(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    jobs: List[JobStatus]


# ============================================================================
# Ingestion History Schemas
# ============================================================================

class IngestionRecordResponse(BaseModel):
    """One ledger entry"""
    id: int
    source_id: str
    file_path: str
    checksum: Optional[str]
    outcome: IngestionOutcome
    row_count: Optional[int]
    attempts: int
    error_detail: Optional[str]
    first_seen_at: datetime
    ingested_at: Optional[datetime]
    updated_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class IngestionsResponse(BaseModel):
    records: List[IngestionRecordResponse]
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Event Schemas
# ============================================================================

class EventDecision(BaseModel):
    path: str
    decision: str


class EventsResponse(BaseModel):
    received: int
    decisions: List[EventDecision]


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
