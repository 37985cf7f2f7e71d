"""
MODULE OVERVIEW:
FastAPI middleware to track request timings.
Middleware runs on every plain HTTP request; WebSocket traffic bypasses it.

WHAT IS HAPPENING HERE:
We add an `X-Process-Time-Ms` header and a debug log line per request. The
health probe is hit every few seconds by the orchestrator, so it is not logged.
"""

import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from loguru import logger

QUIET_PATHS = frozenset({"/health"})

class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"

        if request.url.path not in QUIET_PATHS:
            logger.debug(f"{request.method} {request.url.path} completed in {process_time_ms:.2f}ms")

        return response
