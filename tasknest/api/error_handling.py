from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tasknest.api.schemas import Envelope, ErrorBody
from tasknest.logging import get_logger
from tasknest.service.errors import ServiceError
from tasknest.service.fs import PathTraversalError
from tasknest.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    """Map HTTP status to a stable error code."""
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    if 400 <= status_code < 500:
        return "validation_error"
    return "server_error"


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(success=False, error=error_body, message=message)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for err in exc.errors():
        details.append(
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "invalid value"),
                "type": err.get("type"),
            }
        )
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(
            400,
            "invalid request",
            {"reason": "invalid_input", "errors": details},
            code="validation_error",
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        return _error_response(400, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            reason=exc.detail.get("reason"),
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        logger.warning(
            "path_traversal_attempt",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return _error_response(400, str(exc), code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Envelope-shaped detail produced by routes._http_error()
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            if exc.status_code >= 500:
                logger.error(
                    "http_error",
                    path=request.url.path,
                    method=request.method,
                    status_code=exc.status_code,
                    error_code=code,
                    message=message,
                )
            else:
                logger.warning(
                    "http_client_error",
                    path=request.url.path,
                    method=request.method,
                    status_code=exc.status_code,
                    error_code=code,
                    message=message,
                )
            return _error_response(exc.status_code, message, error_obj.get("details"), code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        # Anything else (404 for unknown routes, 405, ...) keeps its status inside the envelope
        return _error_response(
            exc.status_code, message, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
