"""Exception hierarchy for the docflow ingestion core.

Every error carries a stable ``code`` and a ``category`` so the job manager
can decide between RETRYING and FAILED, and so outer layers (API, CLI) can
surface a public message without leaking internals.
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from google.api_core import exceptions as gexc


class ErrorCategory(str, Enum):
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    VALIDATION = "VALIDATION"
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    SYSTEM = "SYSTEM"


class DocflowError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"
    category = ErrorCategory.SYSTEM
    retryable = False
    public_message = "An internal error occurred"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        super().__init__(message or self.public_message)
        self.context: dict[str, Any] = dict(context)
        self.stage: str | None = None
        self.attempts: int | None = None

    def to_public_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.public_message}


class ValidationError(DocflowError):
    """Raised when input or an intermediate result fails a data-quality gate."""

    code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION
    public_message = "Input failed validation"

    def __init__(
        self,
        message: str,
        *,
        field: str,
        constraint: str,
        value: Any = None,
        passed_steps: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.field = field
        self.constraint = constraint
        self.value = value
        self.passed_steps = list(passed_steps or [])

    def to_public_dict(self) -> dict[str, str]:
        return {
            "code": self.code,
            "message": f"{self.public_message}: {self.field} ({self.constraint})",
        }


class NotFoundError(DocflowError):
    code = "NOT_FOUND"
    public_message = "Requested resource was not found"


class AuthenticationError(DocflowError):
    code = "UNAUTHENTICATED"
    category = ErrorCategory.AUTH
    public_message = "Authentication failed"


class AuthorizationError(DocflowError):
    code = "FORBIDDEN"
    category = ErrorCategory.AUTH
    public_message = "Operation not permitted"


class NetworkError(DocflowError):
    """Transient transport failure talking to a collaborator."""

    code = "NETWORK_ERROR"
    category = ErrorCategory.NETWORK
    retryable = True
    public_message = "A downstream service is unavailable"


class RateLimitError(NetworkError):
    code = "RATE_LIMITED"
    category = ErrorCategory.RATE_LIMIT
    public_message = "A downstream service is rate limiting requests"


class OperationTimeoutError(DocflowError, TimeoutError):
    """Raised when a wrapped call exceeds its absolute timeout."""

    code = "TIMEOUT"
    category = ErrorCategory.TIMEOUT
    retryable = True
    public_message = "The operation timed out"


class CircuitOpenError(DocflowError):
    """Raised without invoking the wrapped call while a breaker is open."""

    code = "CIRCUIT_OPEN"
    category = ErrorCategory.NETWORK
    retryable = True
    public_message = "Service temporarily unavailable, retry later"

    def __init__(self, breaker_name: str) -> None:
        super().__init__(f"circuit '{breaker_name}' is open", breaker=breaker_name)
        self.breaker_name = breaker_name


class InvalidTransitionError(DocflowError):
    code = "INVALID_TRANSITION"
    public_message = "The job cannot move to the requested status"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"invalid transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class VersionConflictError(DocflowError):
    """Optimistic-lock failure; reload the job and retry the whole operation."""

    code = "VERSION_CONFLICT"
    public_message = "The job was modified concurrently"

    def __init__(self, job_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"job {job_id} version conflict: expected {expected}, found {actual}"
        )
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class AlreadyRunningError(DocflowError):
    code = "ALREADY_RUNNING"
    public_message = "The job is already running"


class RetryLimitExceededError(DocflowError):
    code = "RETRY_LIMIT_EXCEEDED"
    public_message = "The job has exhausted its retry budget"


class ProcessingCancelledError(DocflowError):
    code = "CANCELLED"
    public_message = "Processing was cancelled"


class ProcessingError(DocflowError):
    """Generic pipeline stage failure that is not otherwise classified."""

    code = "PROCESSING_ERROR"
    public_message = "Document processing failed"


_RETRYABLE_GOOGLE_ERRORS: tuple[type[Exception], ...] = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.TooManyRequests,
    gexc.InternalServerError,
    gexc.Aborted,
    gexc.BadGateway,
    gexc.GatewayTimeout,
)

_FATAL_GOOGLE_CODES: dict[type[Exception], tuple[str, ErrorCategory]] = {
    gexc.NotFound: ("NOT_FOUND", ErrorCategory.SYSTEM),
    gexc.Unauthenticated: ("UNAUTHENTICATED", ErrorCategory.AUTH),
    gexc.PermissionDenied: ("FORBIDDEN", ErrorCategory.AUTH),
    gexc.BadRequest: ("VALIDATION_ERROR", ErrorCategory.VALIDATION),
}


def is_retryable(exc: BaseException) -> bool:
    """Return True when ``exc`` is a transient failure worth retrying."""
    if isinstance(exc, DocflowError):
        return exc.retryable
    if isinstance(exc, _RETRYABLE_GOOGLE_ERRORS):
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    return False


def categorize(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, DocflowError):
        return exc.category
    if isinstance(exc, gexc.TooManyRequests):
        return ErrorCategory.RATE_LIMIT
    if isinstance(exc, (gexc.DeadlineExceeded, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, _RETRYABLE_GOOGLE_ERRORS) or isinstance(exc, ConnectionError):
        return ErrorCategory.NETWORK
    for exc_type, (_code, category) in _FATAL_GOOGLE_CODES.items():
        if isinstance(exc, exc_type):
            return category
    return ErrorCategory.SYSTEM


def error_code(exc: BaseException) -> str:
    if isinstance(exc, DocflowError):
        return exc.code
    for exc_type, (code, _category) in _FATAL_GOOGLE_CODES.items():
        if isinstance(exc, exc_type):
            return code
    if isinstance(exc, TimeoutError):
        return OperationTimeoutError.code
    if is_retryable(exc):
        return NetworkError.code
    return DocflowError.code


def public_error(exc: BaseException) -> dict[str, str]:
    """Map any exception to ``{code, message}`` without internal details."""
    if isinstance(exc, DocflowError):
        return exc.to_public_dict()
    code = error_code(exc)
    messages = {
        "NOT_FOUND": NotFoundError.public_message,
        "UNAUTHENTICATED": AuthenticationError.public_message,
        "FORBIDDEN": AuthorizationError.public_message,
        "VALIDATION_ERROR": ValidationError.public_message,
        "TIMEOUT": OperationTimeoutError.public_message,
        "NETWORK_ERROR": NetworkError.public_message,
    }
    return {"code": code, "message": messages.get(code, DocflowError.public_message)}


__all__ = [
    "ErrorCategory",
    "DocflowError",
    "ValidationError",
    "NotFoundError",
    "AuthenticationError",
    "AuthorizationError",
    "NetworkError",
    "RateLimitError",
    "OperationTimeoutError",
    "CircuitOpenError",
    "InvalidTransitionError",
    "VersionConflictError",
    "AlreadyRunningError",
    "RetryLimitExceededError",
    "ProcessingCancelledError",
    "ProcessingError",
    "is_retryable",
    "categorize",
    "error_code",
    "public_error",
]
