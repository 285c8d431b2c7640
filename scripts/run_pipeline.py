"""
Script to run the pipeline headless: ingestion workers, refresh driver and
task driver, until interrupted.

File events arrive through the API (POST /events); this runner is for
deployments where a separate process feeds the listener, and for running
scheduled jobs without serving HTTP.
"""

import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import PipelineException
from core.logging import setup_logging
from core.pipeline import build_pipeline
from schemas.pipeline import load_pipeline_config

logger = logging.getLogger(__name__)


async def run_pipeline():
    """Build the pipeline from PIPELINE_CONFIG_PATH and run until SIGINT/SIGTERM"""
    if not settings.PIPELINE_CONFIG_PATH:
        logger.error("PIPELINE_CONFIG_PATH is not set")
        sys.exit(1)

    try:
        config = load_pipeline_config(settings.PIPELINE_CONFIG_PATH)
        pipeline = await build_pipeline(settings, config)
    except PipelineException as e:
        logger.error(f"Invalid pipeline configuration: {e}", extra={"error_context": e.to_dict()})
        sys.exit(1)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pipeline.start()
    logger.info("Pipeline running; press Ctrl+C to stop")
    try:
        await stop.wait()
    finally:
        await pipeline.stop()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run_pipeline())
