"""Middleware for error handling and logging."""

import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .clock import utc_now
from .exceptions import (
    APIError,
    ClaimLostError,
    ConfigurationError,
    DefinitionValidationError,
    EnrollmentStateError,
    NotFoundError,
    StorageError,
    TransientError,
    WorkflowEngineError,
    create_error_response,
)
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)


def status_code_for_error(error: WorkflowEngineError) -> int:
    """Determine the HTTP status code for an engine error."""
    if isinstance(error, APIError):
        return error.status_code
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, DefinitionValidationError):
        return 422
    if isinstance(error, (EnrollmentStateError, ClaimLostError)):
        return 409
    if isinstance(error, TransientError):
        return 503
    if isinstance(error, StorageError):
        return 503 if error.recoverable else 500
    if isinstance(error, ConfigurationError):
        return 500
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for error handling and request logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request with error handling."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown"
        )

        try:
            logger.info(f"Request started: {request.method} {request.url.path}")

            response = await call_next(request)

            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except WorkflowEngineError as e:
            duration = time.time() - start_time
            status_code = status_code_for_error(e)

            logger.warning(
                f"Engine error: {request.method} {request.url.path} - "
                f"Error: {e.error_code} - Status: {status_code} - Duration: {duration:.3f}s",
                extra={"error_details": e.to_dict()}
            )

            headers = {"X-Request-ID": request_id}
            if e.retry_after:
                headers["Retry-After"] = str(int(e.retry_after))
            return JSONResponse(
                status_code=status_code,
                content={**create_error_response(e), "request_id": request_id},
                headers=headers
            )

        except Exception as e:
            duration = time.time() - start_time

            logger.error(
                f"Unexpected error: {request.method} {request.url.path} - "
                f"Error: {str(e)} - Duration: {duration:.3f}s",
                exc_info=True
            )

            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": utc_now().isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            clear_logging_context()


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Middleware for performance monitoring and alerting."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Monitor request performance."""
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time

        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} - "
                f"Duration: {duration:.3f}s (threshold: {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"

        return response
