# ============================================================================
# File: api/middleware.py
# ============================================================================

import logging
import re
import time
import uuid
from typing import Optional
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)

# Event sources may send their own delivery id; anything else is replaced
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(header: Optional[str]) -> str:
    if header and _REQUEST_ID_PATTERN.match(header):
        return header
    return f"req_{uuid.uuid4().hex[:12]}"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets request.state.request_id and adds response headers:
    - X-Request-ID: the event source's delivery id when it sent a usable one
    - X-API-Latency-ms
    - X-Ingest-Queue-Depth: worker pool backlog, when a pipeline is attached,
      so event sources can slow down before deliveries are rejected
    """

    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        request.state.request_id = request_id
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        pipeline = getattr(request.app.state, "pipeline", None)
        if pipeline is not None:
            response.headers["X-Ingest-Queue-Depth"] = str(pipeline.pool.queue_depth)

        logger.debug(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({latency_ms}ms)")
        return response
