"""
Request Logging Middleware

Middleware that:
- Reuses the caller's X-Request-ID or generates one
- Logs request start and end with timing
- Propagates request_id to all logs via contextvars
- Records HTTP metrics for Prometheus
"""
import re
import time
import uuid
import logging
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from thumbkeeper.core.logging_config import set_request_id, clear_request_id
from thumbkeeper.core.metrics import record_request_metrics

logger = logging.getLogger(__name__)

# Accept caller-supplied IDs only if they look like an opaque token
_REQUEST_ID_PATTERN = re.compile(r'^[A-Za-z0-9._-]{1,128}$')


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs all HTTP requests with timing and correlation IDs.

    For each request:
    1. Takes X-Request-ID from the request or generates a UUID
    2. Sets request_id in context for all downstream logs
    3. Logs request start (method, path)
    4. Logs request end (status code, response time, resolved storage key)
    """

    # Paths to exclude from detailed logging (health checks, etc.)
    EXCLUDED_PATHS = {'/health', '/metrics', '/docs', '/redoc', '/openapi.json'}

    @staticmethod
    def _request_id_for(request: Request) -> str:
        incoming = request.headers.get("X-Request-ID", "")
        if incoming and _REQUEST_ID_PATTERN.match(incoming):
            return incoming
        return str(uuid.uuid4())

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = self._request_id_for(request)
        token = set_request_id(request_id)
        request.state.request_id = request_id

        start_time = time.perf_counter()
        method = request.method
        path = request.url.path
        client_host = request.client.host if request.client else "unknown"
        should_log = path not in self.EXCLUDED_PATHS

        if should_log:
            logger.info(
                "Request started",
                extra={
                    "event_type": "request_start",
                    "method": method,
                    "path": path,
                    "client_ip": client_host,
                }
            )

        try:
            response = await call_next(request)
            response_time_ms = (time.perf_counter() - start_time) * 1000
            response.headers["X-Request-ID"] = request_id

            if should_log:
                log_level = logging.INFO if response.status_code < 400 else logging.WARNING
                if response.status_code >= 500:
                    log_level = logging.ERROR

                logger.log(
                    log_level,
                    "Request completed",
                    extra={
                        "event_type": "request_complete",
                        "method": method,
                        "path": path,
                        "status_code": response.status_code,
                        "response_time_ms": round(response_time_ms, 2),
                        "storage_key": response.headers.get("X-Storage-Key"),
                    }
                )

            record_request_metrics(
                method=method,
                path=path,
                status_code=response.status_code,
                response_time_seconds=response_time_ms / 1000
            )
            return response

        except Exception as e:
            response_time_ms = (time.perf_counter() - start_time) * 1000

            logger.error(
                "Request failed with exception",
                extra={
                    "event_type": "request_error",
                    "method": method,
                    "path": path,
                    "response_time_ms": round(response_time_ms, 2),
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
                exc_info=True
            )
            record_request_metrics(
                method=method,
                path=path,
                status_code=500,
                response_time_seconds=response_time_ms / 1000
            )
            raise

        finally:
            clear_request_id(token)
