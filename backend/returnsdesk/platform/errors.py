"""
Error responses for the returns backend.

Every error leaves the API as:
    {"message": "...", "error": "ERROR_CODE", "details": {...}}

`details` is omitted when empty. Responses carry an X-Correlation-ID header
that also appears on the matching log line. Stack traces and secret values
never reach a client.

Status codes in use:
- 400: operator input missing, grant rejected, verification failed
- 401: marketplace rejected the credential after a refresh
- 404: no credential set configured
- 500: storage or encryption failure
- 502: marketplace answered with a server error
- 503: marketplace unreachable or timed out; service not initialized
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """
    Base for every error the API renders itself.

    Subclasses fix the code and status; callers supply the message and,
    optionally, non-secret details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return _error_body(self.message, self.code, self.details)


class ValidationError(AppError):
    """Malformed operator input (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


def _error_body(message: str, code: str, details: Optional[dict[str, Any]] = None) -> dict:
    body: dict[str, Any] = {"message": message, "error": code}
    if details:
        body["details"] = details
    return body


def _correlation_id(request: Request) -> str:
    existing = getattr(request.state, "correlation_id", None)
    return request.headers.get(CORRELATION_HEADER) or existing or str(uuid.uuid4())


def _error_response(request: Request, status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={CORRELATION_HEADER: _correlation_id(request)},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a correlation id and renders uncaught errors.

    AppError keeps its own status and code; anything else becomes a generic
    500 whose only detail is the correlation id.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = _correlation_id(request)
        request.state.correlation_id = correlation_id
        log_context = {
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
        }

        try:
            response = await call_next(request)
        except AppError as e:
            log = logger.error if e.status_code >= 500 else logger.warning
            log(
                "Request failed",
                extra={**log_context, "error_code": e.code, "status_code": e.status_code},
            )
            return _error_response(request, e.status_code, e.to_dict())
        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={**log_context, "error_type": type(e).__name__},
            )
            return _error_response(
                request,
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                _error_body(
                    "An unexpected error occurred",
                    "INTERNAL_ERROR",
                    {"correlation_id": correlation_id},
                ),
            )

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


async def _http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, _error_body(str(exc.detail), "HTTP_ERROR"))


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    # Malformed JSON bodies are operator input errors, reported as 400 like missing fields
    fields = [
        ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        for err in exc.errors()
    ]
    return _error_response(
        request,
        status.HTTP_400_BAD_REQUEST,
        _error_body("Invalid request body", "VALIDATION_ERROR", {"fields": [f for f in fields if f]}),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the error middleware and the framework exception handlers."""
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_exception_handler(HTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
