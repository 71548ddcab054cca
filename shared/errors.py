"""
Domain error taxonomy shared by both services.

REST handlers turn these into the JSON envelope with the matching status code.
Broker consumers use the class to decide between ack (drop) and retry, see
shared.messaging.consumer.disposition_for.
"""
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

logger = structlog.get_logger(__name__)


class DomainError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "DomainError"

    def __init__(self, message: str, error: str | None = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error


class ValidationError(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "ValidationError"


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NotFound"


class ConflictError(DomainError):
    """An expected race outcome (e.g. someone else got the order). Never retried."""

    status_code = status.HTTP_409_CONFLICT
    error = "Conflict"

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason, error=reason)
        self.reason = reason


class TransientInfraError(DomainError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "TransientInfraError"


class PermanentError(DomainError):
    """A message that can never succeed (malformed payload, unknown enum value)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error = "PermanentError"


def error_envelope(message: str, error: str, **extra) -> dict:
    body = {"success": False, "message": message, "error": error}
    body.update(extra)
    return body


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("request_failed", path=request.url.path, error=exc.error, message=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(exc.message, exc.error),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_envelope("Validation error", ValidationError.error, details=details),
    )


HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "Unauthorized",
    status.HTTP_403_FORBIDDEN: "Forbidden",
    status.HTTP_404_NOT_FOUND: "NotFound",
    status.HTTP_405_METHOD_NOT_ALLOWED: "MethodNotAllowed",
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(str(exc.detail), HTTP_ERROR_CODES.get(exc.status_code, "HTTPError")),
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
