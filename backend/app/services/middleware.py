"""Request timing and tracing middleware for the road progress backend."""
import os
import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("progress-api.middleware")

SKIP_LOG_PATHS = {"/health"}
SLOW_REQUEST_MS = float(os.getenv("SLOW_REQUEST_MS", "2000"))


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Reuses the caller's X-Request-ID or assigns a uuid4 one.
    - Measures end-to-end request duration and adds X-Process-Time.
    - Emits one structured log line per request (except /health), at WARNING
      when the request is slower than SLOW_REQUEST_MS.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.perf_counter()
        request.state.request_id = request_id

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path not in SKIP_LOG_PATHS:
            level = logging.WARNING if duration_ms >= SLOW_REQUEST_MS else logging.INFO
            logger.log(
                level,
                "request completed",
                extra={
                    "http_method": request.method,
                    "http_path": request.url.path,
                    "http_status": response.status_code,
                    "request_id": request_id,
                    "duration_ms": duration_ms,
                },
            )

        return response
