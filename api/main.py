"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import events, health, status
from core.config import settings
from core.logging import setup_logging
from core.pipeline import build_pipeline
from schemas.pipeline import PipelineConfig, load_pipeline_config
import logging
from api.middleware import RequestContextMiddleware

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Auto-Ingest Pipeline API",
    description="Storage event intake and status surface for the auto-ingest and staged-refresh pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(status.router)
app.include_router(events.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Auto-Ingest Pipeline API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if getattr(app.state, "pipeline", None) is None:
        if settings.PIPELINE_CONFIG_PATH:
            config = load_pipeline_config(settings.PIPELINE_CONFIG_PATH)
        else:
            logger.warning("PIPELINE_CONFIG_PATH not set; starting with an empty topology")
            config = PipelineConfig()
        app.state.pipeline = await build_pipeline(settings, config)

    await app.state.pipeline.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Auto-Ingest Pipeline API")
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Auto-Ingest Pipeline API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "events": "/events",
            "sources": "/status/sources",
            "objects": "/status/objects",
            "jobs": "/status/jobs",
            "ingestions": "/status/ingestions"
        }
    }
