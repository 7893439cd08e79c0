"""HTTP middleware: request ids, error mapping and slow-request warnings."""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response, http_status_for
from .logging import get_logger, log_with_context, reset_logging_context, set_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each HTTP request with an id and maps uncaught errors to JSON.

    A caller-supplied ``X-Request-ID`` is reused so traces can be joined
    across services.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.perf_counter()
        token = set_logging_context(http_request_id=request_id, method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            log_with_context(
                logger, logging.WARNING, f"{request.method} {request.url.path} failed with {e.error_code}",
                duration_ms=round((time.perf_counter() - started) * 1000, 2), error=e.to_dict(),
            )
            response = JSONResponse(status_code=http_status_for(e), content=create_error_response(e))
        except Exception as e:
            logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                    "request_id": request_id,
                },
            )
        else:
            log_with_context(
                logger, logging.INFO, f"{request.method} {request.url.path} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        finally:
            reset_logging_context(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Adds ``X-Response-Time`` and warns above ``slow_request_threshold`` seconds."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        if elapsed > self.slow_request_threshold:
            log_with_context(
                logger, logging.WARNING, f"Slow request: {request.method} {request.url.path}",
                duration_s=round(elapsed, 3), threshold_s=self.slow_request_threshold,
            )
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
        return response
