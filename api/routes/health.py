"""
Health check endpoint with ledger store and pipeline status
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from api.dependencies import get_pipeline
from core.pipeline import Pipeline
from refresh.graph import ObjectState
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(pipeline: Pipeline = Depends(get_pipeline)):
    """
    Health check endpoint.

    Returns:
    - Ledger store connectivity
    - Whether the pipeline workers and drivers are running
    - Number of derived objects whose last refresh failed
    """
    db_connected = False

    try:
        async with pipeline.ledger.SessionLocal() as session:
            await session.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    failed_objects = sum(
        1 for obj in pipeline.graph.objects() if obj.state == ObjectState.FAILED
    )

    return HealthCheckResponse(
        database_connected=db_connected,
        pipeline_started=pipeline.started,
        failed_objects=failed_objects
    )
