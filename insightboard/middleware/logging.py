"""
middleware/logging.py

Access logging for every request.

Each request gets a request id (echoed back as X-Request-ID) and one log
line on completion with method, path, status, latency and client IP.
Denials produced by the authorization middleware are logged too, because
this middleware is registered outermost.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from insightboard.api.deps import get_client_ip

logger = logging.getLogger("insightboard.access")

# Health-check noise.
_SKIP_LOG_PATHS = {"/health", "/docs", "/redoc", "/openapi.json", "/favicon.ico"}

_SLOW_REQUEST_MS = 1000


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        if request.url.path in _SKIP_LOG_PATHS:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        start_time = time.time()
        client_ip = get_client_ip(request)
        method = request.method
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception as e:
            latency_ms = round((time.time() - start_time) * 1000, 2)
            logger.error(
                f"[{request_id}] {method} {path} failed after {latency_ms}ms from {client_ip}: {e}"
            )
            raise

        latency_ms = round((time.time() - start_time) * 1000, 2)
        message = f"[{request_id}] {method} {path} -> {response.status_code} ({latency_ms}ms) from {client_ip}"
        if response.status_code >= 500:
            logger.error(message)
        elif response.status_code >= 400 or latency_ms > _SLOW_REQUEST_MS:
            logger.warning(message)
        else:
            logger.info(message)

        response.headers["X-Request-ID"] = request_id
        return response
