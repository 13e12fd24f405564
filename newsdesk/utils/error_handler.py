"""
Error taxonomy and the public error contract.

Every failure that reaches a caller is expressed as an `ErrorKind`, mapped
through one table to an HTTP status, a stable public code and a generic
message, and rendered as a JSON error envelope. Message text is redacted
before it leaves the process; internal detail goes to the security event
log and structured logs only.
"""

from __future__ import annotations

import re
import threading
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from newsdesk.security.monitoring.events import EventSeverity, SecurityEventType
from newsdesk.security.monitoring.security_metrics import (
    BLOCKED_REQUESTS_TOTAL,
    ERROR_RESPONSES_TOTAL,
)
from newsdesk.security.request_context import ClientIdentity, extract_client_ip
from newsdesk.utils.logger import add_request_context, get_logger

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Canonical failure kinds"""

    VALIDATION = "validation"
    AUTH = "auth"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    CSRF = "csrf"
    UPLOAD = "upload"
    STORAGE = "storage"
    UNEXPECTED = "unexpected"
    THREAT = "threat"


@dataclass(frozen=True)
class ErrorSpec:
    status: int
    code: str
    message: str
    event_type: SecurityEventType
    event_severity: EventSeverity


ERROR_SPECS: Dict[ErrorKind, ErrorSpec] = {
    ErrorKind.VALIDATION: ErrorSpec(
        400,
        "VALIDATION_ERROR",
        "The request data is invalid.",
        SecurityEventType.INPUT_VALIDATION_FAILED,
        EventSeverity.LOW,
    ),
    ErrorKind.AUTH: ErrorSpec(
        401,
        "AUTH_ERROR",
        "Authentication required.",
        SecurityEventType.UNAUTHORIZED_ACCESS,
        EventSeverity.MEDIUM,
    ),
    ErrorKind.AUTHORIZATION: ErrorSpec(
        403,
        "AUTHORIZATION_ERROR",
        "You do not have permission to perform this action.",
        SecurityEventType.UNAUTHORIZED_ACCESS,
        EventSeverity.MEDIUM,
    ),
    ErrorKind.RATE_LIMIT: ErrorSpec(
        429,
        "RATE_LIMIT_ERROR",
        "Too many requests, please try again later.",
        SecurityEventType.RATE_LIMIT_EXCEEDED,
        EventSeverity.MEDIUM,
    ),
    ErrorKind.CSRF: ErrorSpec(
        403,
        "CSRF_ERROR",
        "CSRF validation failed.",
        SecurityEventType.CSRF_VIOLATION,
        EventSeverity.HIGH,
    ),
    ErrorKind.UPLOAD: ErrorSpec(
        400,
        "UPLOAD_ERROR",
        "The uploaded file was rejected.",
        SecurityEventType.UPLOAD_REJECTED,
        EventSeverity.MEDIUM,
    ),
    ErrorKind.STORAGE: ErrorSpec(
        500,
        "STORAGE_ERROR",
        "A storage error occurred. Please try again later.",
        SecurityEventType.STORAGE_ERROR,
        EventSeverity.HIGH,
    ),
    ErrorKind.UNEXPECTED: ErrorSpec(
        500,
        "INTERNAL_ERROR",
        "An unexpected error occurred.",
        SecurityEventType.UNEXPECTED_ERROR,
        EventSeverity.HIGH,
    ),
    ErrorKind.THREAT: ErrorSpec(
        403,
        "SECURITY_VIOLATION",
        "Request blocked by security policy.",
        SecurityEventType.SUSPICIOUS_ACTIVITY,
        EventSeverity.HIGH,
    ),
}


# === Redaction ===

_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_SECRET_ASSIGNMENT = re.compile(
    r"[\w-]*(?:password|passwd|pwd|token|secret|key)[\w-]*\s*[=:]\s*"
    r"(?:\"[^\"]*\"|'[^']*'|[^\s,;&]+)",
    re.IGNORECASE,
)
_SECRET_WORD = re.compile(r"(?:password|passwd|token|secret|key)", re.IGNORECASE)
_NUMERIC_ID = re.compile(r"\b\d{4,}\b")

REDACTED = "[REDACTED]"


def redact(text: Any) -> str:
    """Strip emails, credential-looking text and numeric ids from `text`."""
    text = str(text)
    text = _EMAIL.sub("[EMAIL]", text)
    text = _SECRET_ASSIGNMENT.sub(REDACTED, text)
    text = _SECRET_WORD.sub(REDACTED, text)
    return _NUMERIC_ID.sub(REDACTED, text)


def redact_details(value: Any) -> Any:
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, Mapping):
        return {str(k): redact_details(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_details(v) for v in value]
    return value


# === Failures and envelopes ===


@dataclass(frozen=True)
class SecurityFailure:
    """
    A failed check, carried as data from the check to the response builder.

    `reason` is internal and only reaches logs and the event record;
    `message` (when set) replaces the generic public message and is redacted
    like everything else that is returned.
    """

    kind: ErrorKind
    reason: str = ""
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    retry_after: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    event_severity: Optional[EventSeverity] = None
    event_details: Dict[str, Any] = field(default_factory=dict)

    @property
    def spec(self) -> ErrorSpec:
        return ERROR_SPECS[self.kind]


@dataclass(frozen=True)
class ErrorEnvelope:
    code: str
    message: str
    timestamp: str
    request_id: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        error["timestamp"] = self.timestamp
        error["request_id"] = self.request_id
        return {"error": error}


@dataclass(frozen=True)
class ErrorResponse:
    status: int
    envelope: ErrorEnvelope
    headers: Dict[str, str]

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content=self.envelope.to_dict(),
            headers=self.headers,
        )


class ResponseBuilder:
    """Renders a `SecurityFailure` into the public error contract."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def build(self, failure: SecurityFailure, request_id: Optional[str] = None) -> ErrorResponse:
        spec = failure.spec
        request_id = request_id or str(uuid.uuid4())
        envelope = ErrorEnvelope(
            code=spec.code,
            message=redact(failure.message or spec.message),
            details=redact_details(failure.details) if failure.details else None,
            timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            request_id=request_id,
        )

        headers = dict(failure.headers)
        headers["X-Request-ID"] = request_id
        if failure.kind == ErrorKind.RATE_LIMIT and failure.retry_after is not None:
            headers["Retry-After"] = str(failure.retry_after)

        ERROR_RESPONSES_TOTAL.labels(code=spec.code).inc()
        return ErrorResponse(status=spec.status, envelope=envelope, headers=headers)

    def to_response(self, failure: SecurityFailure, request_id: Optional[str] = None) -> JSONResponse:
        return self.build(failure, request_id).to_response()


# === Custom exception classes ===


class SecurityError(Exception):
    """Base class for errors application code raises to produce an envelope"""

    kind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str = "",
        *,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.details = details
        self.retry_after = retry_after

    def to_failure(self) -> SecurityFailure:
        spec = ERROR_SPECS[self.kind]
        message = str(self)
        return SecurityFailure(
            kind=self.kind,
            reason=message or type(self).__name__,
            # server-side kinds never echo their message
            message=message if message and spec.status < 500 else None,
            details=self.details,
            retry_after=self.retry_after,
        )


class InputValidationError(SecurityError):
    kind = ErrorKind.VALIDATION


class AuthenticationError(SecurityError):
    kind = ErrorKind.AUTH


class AuthorizationError(SecurityError):
    kind = ErrorKind.AUTHORIZATION


class RateLimitExceeded(SecurityError):
    kind = ErrorKind.RATE_LIMIT


class CSRFError(SecurityError):
    kind = ErrorKind.CSRF


class UploadError(SecurityError):
    kind = ErrorKind.UPLOAD


class StorageError(SecurityError):
    kind = ErrorKind.STORAGE


def classify_exception(error: BaseException) -> SecurityFailure:
    """Map an exception to a failure; only `SecurityError` text is ever public."""
    if isinstance(error, SecurityError):
        return error.to_failure()

    reason = f"{type(error).__name__}: {error}"
    error_mappings = [
        (PermissionError, ErrorKind.AUTHORIZATION),
        (TimeoutError, ErrorKind.STORAGE),
        (OSError, ErrorKind.STORAGE),
        (ValueError, ErrorKind.VALIDATION),
        (KeyError, ErrorKind.VALIDATION),
    ]
    for exc_type, kind in error_mappings:
        if isinstance(error, exc_type):
            return SecurityFailure(kind=kind, reason=reason)
    return SecurityFailure(kind=ErrorKind.UNEXPECTED, reason=reason)


# === Error statistics ===


class ErrorStats:
    """Bounded counters of error responses, by code and by kind."""

    FREQUENCY_WARNING = 5

    def __init__(self, max_keys: int = 1000) -> None:
        self.max_keys = max_keys
        self._lock = threading.Lock()
        self._by_kind: Counter = Counter()
        self._by_key: Counter = Counter()
        self._total = 0

    def record(self, failure: SecurityFailure) -> int:
        key = f"{failure.spec.code}:{failure.reason.split(':')[0] or failure.kind.value}"
        with self._lock:
            self._total += 1
            self._by_kind[failure.kind.value] += 1
            if key in self._by_key or len(self._by_key) < self.max_keys:
                self._by_key[key] += 1
            count = self._by_key.get(key, 0)
        if count == self.FREQUENCY_WARNING + 1:
            logger.warning("error_frequency_high", error_key=key, count=count)
        return count

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total": self._total,
                "by_kind": dict(self._by_kind),
                "top_errors": [
                    {"key": key, "count": count} for key, count in self._by_key.most_common(10)
                ],
            }


class ErrorResponder:
    """
    Turns failures into responses and keeps enforcement auditable: every
    rejection is also recorded as a security event.
    """

    def __init__(
        self,
        monitor: Any,
        builder: Optional[ResponseBuilder] = None,
        stats: Optional[ErrorStats] = None,
    ) -> None:
        self.monitor = monitor
        self.builder = builder or ResponseBuilder()
        self.stats = stats or ErrorStats()

    def reject(
        self,
        failure: SecurityFailure,
        identity: ClientIdentity,
        request_id: Optional[str] = None,
        *,
        blocked: bool = True,
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorResponse:
        spec = failure.spec
        response = self.builder.build(failure, request_id)
        request_id = response.envelope.request_id

        details: Dict[str, Any] = {
            "kind": failure.kind.value,
            "code": spec.code,
            "reason": failure.reason,
            "request_id": request_id,
            "blocked": blocked,
        }
        details.update(context or {})
        details.update(failure.event_details)
        self.monitor.log_event(
            spec.event_type,
            failure.event_severity or spec.event_severity,
            identity.ip,
            user_agent=identity.user_agent,
            details=details,
        )
        self.stats.record(failure)
        if blocked:
            BLOCKED_REQUESTS_TOTAL.labels(control=failure.kind.value).inc()
        return response

    def get_error_stats(self) -> Dict[str, Any]:
        return self.stats.snapshot()


# === FastAPI integration ===


def _responder_for(request: Request) -> Optional[ErrorResponder]:
    services = getattr(request.app.state, "security", None)
    return getattr(services, "responder", None)


def respond_to_exception(
    request: Request, error: BaseException, responder: Optional[ErrorResponder] = None
) -> JSONResponse:
    """Classify `error`, log it and render the envelope for this request."""
    failure = classify_exception(error)
    request_id = getattr(request.state, "request_id", None)
    log_data = {
        **add_request_context(request),
        "kind": failure.kind.value,
        "error_type": type(error).__name__,
    }
    if failure.spec.status >= 500:
        logger.error("request_failed", **log_data, exc_info=error)
    else:
        logger.warning("request_failed", **log_data)

    responder = responder or _responder_for(request)
    if responder is None:
        return ResponseBuilder().to_response(failure, request_id)

    identity = ClientIdentity(
        ip=extract_client_ip(
            {k.lower(): v for k, v in request.headers.items()},
            request.client.host if request.client else None,
        ),
        user_agent=request.headers.get("user-agent") or "unknown",
    )
    return responder.reject(
        failure,
        identity,
        request_id,
        blocked=failure.spec.status < 500,
        context={"path": request.url.path, "method": request.method},
    ).to_response()


async def security_error_handler(request: Request, exc: SecurityError) -> JSONResponse:
    """Exception handler for `SecurityError` raised in routes and dependencies."""
    return respond_to_exception(request, exc)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Converts uncaught handler exceptions into error envelopes"""

    def __init__(self, app, responder: Optional[ErrorResponder] = None):
        super().__init__(app)
        self._responder = responder

    async def dispatch(self, request: Request, call_next):
        try:
            response = await call_next(request)
            return response
        except HTTPException:
            raise  # Let FastAPI handle it
        except Exception as e:
            return respond_to_exception(request, e, self._responder)
