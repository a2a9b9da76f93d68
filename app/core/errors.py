"""
Error taxonomy and secure error responses.

Every failure a client can observe is one of the exceptions below. Each carries
a fixed generic message and machine-readable code; underlying exception text,
store error codes and stack traces stay server-side and are only logged in a
sanitized form.
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.config import settings

logger = logging.getLogger(__name__)


SECURE_ERROR_MESSAGES: Dict[str, str] = {
    "AUTH_REQUIRED": "Authentication required",
    "AUTH_INVALID": "Invalid authentication credentials",
    "UNAUTHORIZED": "You are not authorized to perform this action",
    "INVALID_INPUT": "Invalid input provided",
    "VERIFICATION_FAILED": "Verification failed",
    "CSRF_INVALID": "Invalid security token. Please refresh and try again.",
    "RATE_LIMIT_EXCEEDED": "Too many requests. Please try again later.",
    "RECORD_NOT_FOUND": "Record not found",
    "ACCOUNT_NOT_FOUND": "Account not found",
    "ACCOUNT_EXISTS": "Account already exists",
    "CODE_EXPIRED": "Verification code expired",
    "CONFIG_ERROR": "Service configuration error",
    "INTERNAL_ERROR": "An internal error occurred",
}

SENSITIVE_FIELDS = (
    "password", "password_hash", "token", "secret", "key",
    "authorization", "cookie", "session", "auth",
    "jwt", "csrf", "api_key", "access_token",
    "refresh_token", "private_key", "client_secret",
)

REDACTED = "[REDACTED]"

# Long hex runs (CSRF tokens, session ids, digests) and JWT-shaped strings
_SECRET_PATTERNS = (
    re.compile(r"\b[0-9a-fA-F]{32,}\b"),
    re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]+\b"),
)


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityError(Exception):
    """
    Base class for every client-visible failure.

    Attributes:
        code: Key into SECURE_ERROR_MESSAGES, also returned to the client
        status_code: HTTP status to respond with
        severity: Severity recorded in the server-side log
        operation: Name of the operation that failed (for logging)
        detail: Server-side only description, never sent to the client
    """

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    severity = ErrorSeverity.HIGH

    def __init__(self, detail: Any = None, operation: Optional[str] = None, code: Optional[str] = None):
        if code is not None:
            self.code = code
        self.detail = detail
        self.operation = operation
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return SECURE_ERROR_MESSAGES[self.code]


class AuthRequired(SecurityError):
    code = "AUTH_REQUIRED"
    status_code = status.HTTP_401_UNAUTHORIZED
    severity = ErrorSeverity.MEDIUM


class AuthInvalid(SecurityError):
    code = "AUTH_INVALID"
    status_code = status.HTTP_401_UNAUTHORIZED


class Unauthorized(SecurityError):
    """Cross-binding violation, e.g. a session trying to act on another code."""
    code = "UNAUTHORIZED"
    status_code = status.HTTP_403_FORBIDDEN


class ValidationFailed(SecurityError):
    code = "INVALID_INPUT"
    status_code = status.HTTP_400_BAD_REQUEST
    severity = ErrorSeverity.MEDIUM


class VerificationPending(ValidationFailed):
    code = "VERIFICATION_FAILED"


class CsrfInvalid(SecurityError):
    code = "CSRF_INVALID"
    status_code = status.HTTP_403_FORBIDDEN


class RateLimited(SecurityError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    severity = ErrorSeverity.MEDIUM

    def __init__(self, retry_after: int, limit: Optional[int] = None, reset_at: Optional[float] = None, **kwargs):
        self.retry_after = max(1, int(retry_after))
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(**kwargs)


class RecordNotFound(SecurityError):
    code = "RECORD_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    severity = ErrorSeverity.MEDIUM


class RecordExists(SecurityError):
    code = "ACCOUNT_EXISTS"
    status_code = status.HTTP_409_CONFLICT
    severity = ErrorSeverity.MEDIUM


class CodeExpired(SecurityError):
    code = "CODE_EXPIRED"
    status_code = status.HTTP_410_GONE
    severity = ErrorSeverity.MEDIUM


class ConfigError(SecurityError):
    """Fatal misconfiguration. Raised at startup, never per request."""
    code = "CONFIG_ERROR"
    severity = ErrorSeverity.CRITICAL


class UpstreamError(SecurityError):
    """Store or messaging-send failure."""
    code = "INTERNAL_ERROR"


def _redact_text(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(REDACTED, text)
    for field in SENSITIVE_FIELDS:
        text = re.sub(rf"({field})\s*[=:]\s*[^,;}}\s]+", rf"\1={REDACTED}", text, flags=re.IGNORECASE)
    return text


def sanitize_for_logging(value: Any) -> Any:
    """
    Return a copy of value that is safe to write to logs.

    Dict keys naming secrets are redacted, strings have token-like runs masked,
    exceptions are reduced to their type and redacted message.
    """
    if value is None:
        return None
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": _redact_text(str(value))}
    if isinstance(value, dict):
        sanitized = {}
        for key, item in value.items():
            if any(field in str(key).lower() for field in SENSITIVE_FIELDS):
                sanitized[key] = REDACTED
            else:
                sanitized[key] = sanitize_for_logging(item)
        return sanitized
    if isinstance(value, (list, tuple, set)):
        return [sanitize_for_logging(item) for item in value]
    if isinstance(value, str):
        return _redact_text(value)
    return value


def log_security_event(
    event: str,
    operation: Optional[str],
    fingerprint: Optional[str] = None,
    severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    detail: Any = None,
) -> None:
    """Write a sanitized security event to the server log."""
    level = logging.WARNING
    if severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
        level = logging.ERROR
    logger.log(
        level,
        f"Security event {event} in {operation or 'unknown'}",
        extra={
            "event": event,
            "operation": operation,
            "fingerprint": fingerprint,
            "severity": severity.value,
            "sanitized_error": sanitize_for_logging(detail),
        },
    )


def _fingerprint(request: Request) -> str:
    from app.core.rate_limiter import get_fingerprint
    return get_fingerprint(request)


def build_error_response(exc: SecurityError) -> JSONResponse:
    """Render the fixed client payload for an error."""
    content: Dict[str, Any] = {
        "success": False,
        "error": exc.message,
        "code": exc.code,
    }
    headers: Dict[str, str] = {}

    if isinstance(exc, RateLimited):
        content["retryAfter"] = exc.retry_after
        headers["Retry-After"] = str(exc.retry_after)
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = "0"
        if exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(int(exc.reset_at))

    if settings.is_development and exc.detail is not None:
        content["debug"] = sanitize_for_logging(exc.detail)

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    log_security_event(
        exc.code,
        exc.operation or request.url.path,
        fingerprint=_fingerprint(request),
        severity=exc.severity,
        detail=exc.detail,
    )
    return build_error_response(exc)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Field-level errors stay in the log only
    failure = ValidationFailed(
        detail=[error.get("type") for error in exc.errors()],
        operation=request.url.path,
    )
    return await security_error_handler(request, failure)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        f"Unhandled error in {request.url.path}",
        extra={"fingerprint": _fingerprint(request), "sanitized_error": sanitize_for_logging(exc)},
    )
    return build_error_response(UpstreamError())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SecurityError, security_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
