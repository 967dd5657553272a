from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.logging import get_correlation_id, get_logger, sanitize_error_message
from tenantauth.service.errors import ErrorKind, ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# The only place error kinds become transport status codes
KIND_TO_STATUS = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_LOCKED: 403,
    ErrorKind.TENANT_INACTIVE: 401,
    ErrorKind.TOKEN_REVOKED: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_MALFORMED: 401,
    ErrorKind.TOKEN_INVALID: 401,
    ErrorKind.MFA_REQUIRED: 401,
    ErrorKind.MFA_SESSION_EXPIRED: 401,
    ErrorKind.MFA_VERIFICATION_FAILED: 401,
    ErrorKind.MFA_LOCKED: 429,
    ErrorKind.PASSWORD_POLICY_VIOLATION: 400,
    ErrorKind.PASSWORD_REUSE_VIOLATION: 400,
    ErrorKind.RECOVERY_CODE_INVALID_OR_USED: 401,
    ErrorKind.LOOKUP_FAILED: 503,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.SERVER_ERROR: 500,
}


def status_for(kind: ErrorKind) -> int:
    return KIND_TO_STATUS.get(kind, 500)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: ErrorKind = ErrorKind.SERVER_ERROR,
) -> JSONResponse:
    error_body = ErrorBody(code=code.value, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Install the auth error boundary on ``app``."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code = status_for(exc.kind)
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=exc.kind.value,
        )
        if exc.kind == ErrorKind.LOOKUP_FAILED:
            # Store and cache failures never reach the client in detail
            return _error_response(
                status_code,
                "Service temporarily unavailable",
                code=ErrorKind.LOOKUP_FAILED,
            )
        return _error_response(status_code, exc.message, exc.detail, code=exc.kind)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code=ErrorKind.CONFLICT)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _error_response(
            400, "Request validation failed", errors, code=ErrorKind.VALIDATION_ERROR
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code=ErrorKind.SERVER_ERROR)
