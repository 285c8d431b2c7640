"""
FastAPI dependencies
"""

from fastapi import HTTPException, Request

from core.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    """The pipeline attached to the application at startup"""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline is not running")
    return pipeline
