import logging
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Per-request access log.

    - Adds request_id (reused from X-Request-ID when the caller sends one)
    - Logs method, path, status, latency, client IP
    - Never logs headers; webhook Authorization carries the shared secret
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        start_time = time.perf_counter()

        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed request_id=%s method=%s path=%s",
                request_id,
                request.method,
                request.url.path,
            )
            raise

        duration_ms = int((time.perf_counter() - start_time) * 1000)
        client_ip = request.client.host if request.client else None

        logger.info(
            "request_completed request_id=%s method=%s path=%s status_code=%s duration_ms=%s ip=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            client_ip,
        )

        response.headers["X-Request-ID"] = request_id
        return response
