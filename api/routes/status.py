"""
Status query surface: source backlog, derived object freshness, scheduled
jobs and the ingestion ledger history.
"""

from fastapi import APIRouter, Depends, Query, Request
from api.dependencies import get_pipeline
from core.pipeline import Pipeline
from models.base import IngestionOutcome
from schemas.api import (
    IngestionRecordResponse,
    IngestionsResponse,
    JobsResponse,
    JobStatus,
    ObjectFreshness,
    ObjectsResponse,
    SourcesResponse,
    SourceStatus,
)
from typing import Optional
from datetime import datetime
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/status", tags=["Status"])


@router.get("/sources", response_model=SourcesResponse)
async def get_sources(pipeline: Pipeline = Depends(get_pipeline)):
    """Registered source locations with their ledger backlog"""
    backlog = await pipeline.ledger.backlog()
    return SourcesResponse(
        queue_depth=pipeline.pool.queue_depth,
        sources=[
            SourceStatus(
                source_id=location.source_id,
                uri_prefix=location.uri_prefix,
                target_table=location.target_table,
                backlog=backlog.get(location.source_id, 0)
            )
            for location in pipeline.listener.sources()
        ]
    )


@router.get("/objects", response_model=ObjectsResponse)
async def get_objects(pipeline: Pipeline = Depends(get_pipeline)):
    """Freshness of every derived object"""
    last_pass = pipeline.refresh_scheduler.last_pass
    return ObjectsResponse(
        objects=[ObjectFreshness(**entry) for entry in pipeline.refresh_scheduler.freshness()],
        last_pass=last_pass.to_dict() if last_pass else None
    )


@router.get("/jobs", response_model=JobsResponse)
async def get_jobs(pipeline: Pipeline = Depends(get_pipeline)):
    """Scheduled jobs with their last outcome and next fire time"""
    return JobsResponse(
        jobs=[JobStatus(**entry) for entry in pipeline.task_runner.status()]
    )


@router.get("/ingestions", response_model=IngestionsResponse)
async def get_ingestions(
    request: Request,
    outcome: Optional[IngestionOutcome] = Query(None, description="Filter by outcome"),
    source_id: Optional[str] = Query(None, description="Filter by source location"),
    since: Optional[datetime] = Query(None, description="Updated at or after"),
    until: Optional[datetime] = Query(None, description="Updated before"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum records"),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    Ledger history, newest first.

    Typical use: list files that failed to load in the last day.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(
        f"[{request_id}] GET /status/ingestions - outcome={outcome}, "
        f"source_id={source_id}, since={since}, until={until}"
    )

    records = await pipeline.ledger.list_records(
        outcome=outcome, since=since, until=until, source_id=source_id, limit=limit
    )

    filters_applied = {}
    if outcome:
        filters_applied["outcome"] = outcome.value
    if source_id:
        filters_applied["source_id"] = source_id
    if since:
        filters_applied["since"] = since.isoformat()
    if until:
        filters_applied["until"] = until.isoformat()

    return IngestionsResponse(
        records=[IngestionRecordResponse.model_validate(record) for record in records],
        filters_applied=filters_applied
    )
