"""
Service layer exceptions.

Admission, circuit and upstream errors are recovered per backend by the
coordinator. Quota errors abort a search only when nothing is cached.
Cache errors never leave the cache.
"""

from enum import Enum


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class CacheError(ServiceError):
    """Cache operation failed."""

    pass


class RateLimitError(ServiceError):
    """Rate limit exceeded."""

    def __init__(
        self,
        service_id: str,
        retry_after: float | None = None,
        message: str | None = None,
    ):
        self.retry_after = retry_after
        if message is None:
            message = f"Rate limit exceeded for service '{service_id}'"
            if retry_after:
                message += f", retry after {retry_after}s"
        super().__init__(message, service_id=service_id)


class QueueFullError(RateLimitError):
    """Rate limiter queue for a service has no room left."""

    def __init__(self, service_id: str, max_size: int):
        self.max_size = max_size
        super().__init__(
            service_id,
            message=f"Request queue is full for service '{service_id}' ({max_size} waiting)",
        )


class QueueTimeoutError(RateLimitError):
    """Request waited too long in the rate limiter queue."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            service_id,
            message=f"Request to service '{service_id}' timed out in queue after {timeout}s",
        )


class ServiceUnavailableError(ServiceError):
    """Service is temporarily unavailable."""

    pass


class CircuitOpenError(ServiceUnavailableError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class RequestTimeoutError(ServiceError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            service_id=service_id,
        )


class BackendErrorKind(str, Enum):
    """Classification of upstream failures."""

    INVALID_INPUT = "invalid_input"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    MALFORMED_RESPONSE = "malformed_response"
    NO_DATA = "no_data"
    OTHER = "other"


class BackendError(ServiceError):
    """Upstream backend returned an error."""

    # Caller-side problems say nothing about backend health
    _NON_FAILURE_KINDS = frozenset({BackendErrorKind.INVALID_INPUT, BackendErrorKind.NO_DATA})

    def __init__(
        self,
        service_id: str,
        kind: BackendErrorKind,
        detail: str = "",
        status_code: int | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        self.detail = detail
        msg = f"Backend '{service_id}' failed ({kind.value}"
        if status_code is not None:
            msg += f", HTTP {status_code}"
        msg += ")"
        if detail:
            msg += f": {detail}"
        super().__init__(msg, service_id=service_id)

    @property
    def counts_as_failure(self) -> bool:
        return self.kind not in self._NON_FAILURE_KINDS


class QuotaExceededError(ServiceError):
    """Quota governor refused live calls."""

    REASONS = ("daily_limit", "monthly_hard_stop", "fallback_mode", "purpose_denied")

    def __init__(self, reason: str, detail: str = "", retry_hint: str = ""):
        self.reason = reason
        self.retry_hint = retry_hint or "Try again later; cached results are served when available."
        msg = f"Quota exceeded ({reason})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class UnknownBackendError(ServiceError):
    """Backend name is not registered."""

    def __init__(self, service_id: str, known: list[str] | None = None):
        self.known = known or []
        msg = f"Unknown backend '{service_id}'"
        if self.known:
            msg += f" (registered: {', '.join(self.known)})"
        super().__init__(msg, service_id=service_id)


class MissingCredentialError(ServiceError):
    """Credential lookup failed."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Credential '{name}' is not configured")
