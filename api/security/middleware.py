# api/security/middleware.py

import time
import logging
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

SLOW_REQUEST_SECONDS = 5.0
QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request with its status and processing time and keeps
    running counters for the health endpoint.
    """

    def __init__(self, app, slow_request_seconds: float = SLOW_REQUEST_SECONDS):
        super().__init__(app)
        self.slow_request_seconds = slow_request_seconds
        self.stats = {"total_requests": 0, "error_responses": 0, "exceptions": 0}

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_ip = self._client_ip(request)
        self.stats["total_requests"] += 1

        try:
            response = await call_next(request)
        except Exception as e:
            self.stats["exceptions"] += 1
            logger.error(f"💥 Exception processing {request.method} {request.url.path} from {client_ip}: {e}")
            raise

        processing_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{processing_time:.4f}"
        self._add_security_headers(response)

        if response.status_code >= 400:
            self.stats["error_responses"] += 1

        if processing_time > self.slow_request_seconds:
            logger.warning(f"🐌 Slow request from {client_ip}: {processing_time:.2f}s for {request.url.path}")
        elif request.url.path not in QUIET_PATHS:
            logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({processing_time * 1000:.0f}ms)")

        return response

    def _client_ip(self, request: Request) -> str:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _add_security_headers(self, response: Response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
