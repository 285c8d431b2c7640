"""
Storage event intake (S3-style object-created notifications)
"""

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from api.dependencies import get_pipeline
from core.pipeline import Pipeline
from schemas.api import EventDecision, EventsResponse
from typing import Any, Dict
import json
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Events"])


@router.post("/events", response_model=EventsResponse, status_code=202)
async def receive_events(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    Accept a storage notification and queue each new file for ingestion.

    Per-file decisions: enqueued, already_processed, unregistered, rejected.
    Rejected files should be re-delivered by the event source.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    try:
        results = await pipeline.listener.handle_notification(payload)
    except (ValueError, json.JSONDecodeError) as e:
        logger.warning(f"[{request_id}] Malformed notification: {e}")
        raise HTTPException(status_code=400, detail=f"Malformed notification: {e}")

    logger.info(f"[{request_id}] POST /events - {len(results)} file events")
    return EventsResponse(
        received=len(results),
        decisions=[EventDecision(**result) for result in results]
    )
