"""
Error Taxonomy
--------------
Typed errors for outbound API calls.

Every error carries enough structure (code, status, retryable) for the
caller to decide what to do next. The retry loop only retries errors
flagged retryable; the circuit breaker counts every error it sees.

Retryable:
- RateLimitExceeded (local limiter denial, carries reset_at)
- RequestTimeoutError
- HTTPError with status 5xx, 429, 408, 409
- TransportError (unless disabled per client)

Fatal:
- ValidationError, CircuitOpenError, TokenFetchError
- HTTPError with any other 4xx
"""

from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional
import logging

if TYPE_CHECKING:
    from api.models import APIRequest, APIResponse


class ErrorCode(str, Enum):
    """Stable machine-readable error codes."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    HTTP_ERROR = "HTTP_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    TOKEN_FETCH_FAILED = "TOKEN_FETCH_FAILED"
    AUTH_FAILED = "AUTH_FAILED"


# Upstream statuses worth another attempt
RETRYABLE_STATUSES = frozenset({408, 409, 429})


def is_retryable_status(status: int) -> bool:
    """Server errors, throttling, request timeout and conflict are retryable."""
    return status >= 500 or status in RETRYABLE_STATUSES


class APIError(Exception):
    """
    Base error for everything raised by the client pipeline.

    Attributes:
        message: Human readable description
        code: ErrorCode classification
        status: HTTP status, when one was received (or implied)
        response: Originating response, if any
        request: Originating request, if any
        retryable: Whether another attempt may succeed
        details: Free-form structured context
    """

    default_code = ErrorCode.HTTP_ERROR
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        status: Optional[int] = None,
        response: Optional["APIResponse"] = None,
        request: Optional["APIRequest"] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status = status
        self.response = response
        self.request = request
        self.retryable = self.default_retryable if retryable is None else retryable
        self.details = details or {}

    @property
    def cause(self) -> Optional[BaseException]:
        """Underlying exception this error was raised from."""
        return self.__cause__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logging."""
        data: Dict[str, Any] = {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
        }
        if self.status is not None:
            data["status"] = self.status
        if self.request is not None:
            data["method"] = self.request.method
            data["url"] = self.request.url
        if self.details:
            data["details"] = self.details
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}: {self.message})"


class ValidationError(APIError):
    """Malformed request. Never retried."""
    default_code = ErrorCode.VALIDATION_ERROR


class RateLimitExceeded(APIError):
    """Local rate limiter denied the call before it reached the network."""
    default_code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_retryable = True

    def __init__(self, message: str = "Rate limit exceeded", *, reset_at: float, remaining: int = 0, **kwargs):
        kwargs.setdefault("status", 429)
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.remaining = remaining


class RequestTimeoutError(APIError):
    """The call (or one attempt of it) ran out of time."""
    default_code = ErrorCode.TIMEOUT
    default_retryable = True


class HTTPError(APIError):
    """Upstream answered with a non-2xx status."""
    default_code = ErrorCode.HTTP_ERROR

    @classmethod
    def from_status(
        cls,
        status: int,
        reason: str = "",
        *,
        response: Optional["APIResponse"] = None,
        request: Optional["APIRequest"] = None,
    ) -> "HTTPError":
        message = f"HTTP {status}: {reason}" if reason else f"HTTP {status}"
        return cls(
            message,
            status=status,
            response=response,
            request=request,
            retryable=is_retryable_status(status),
        )


class CircuitOpenError(APIError):
    """Raised when the circuit is open and the call is rejected."""
    default_code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, breaker_name: str, remaining_seconds: float, **kwargs):
        self.breaker_name = breaker_name
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit '{breaker_name}' is OPEN. "
            f"Retry in {remaining_seconds:.1f}s",
            **kwargs,
        )


class TransportError(APIError):
    """Connection-level failure (DNS, refused, reset, protocol)."""
    default_code = ErrorCode.TRANSPORT_ERROR
    default_retryable = True


class TokenFetchError(APIError):
    """OAuth2 token endpoint failed. Fatal for the call."""
    default_code = ErrorCode.TOKEN_FETCH_FAILED


class AuthenticationError(APIError):
    """An authentication strategy could not produce credentials. Fatal for the call."""
    default_code = ErrorCode.AUTH_FAILED


_LEVELS: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: logging.WARNING,
    ErrorCode.RATE_LIMIT_EXCEEDED: logging.WARNING,
    ErrorCode.CIRCUIT_OPEN: logging.WARNING,
    ErrorCode.TIMEOUT: logging.ERROR,
    ErrorCode.HTTP_ERROR: logging.ERROR,
    ErrorCode.TRANSPORT_ERROR: logging.ERROR,
    ErrorCode.TOKEN_FETCH_FAILED: logging.ERROR,
    ErrorCode.AUTH_FAILED: logging.ERROR,
}


def log_level_for(error: APIError) -> int:
    """Logging level for an error: caller mistakes warn, upstream failures error."""
    if error.code == ErrorCode.HTTP_ERROR and error.status is not None and not error.retryable:
        return logging.WARNING
    return _LEVELS.get(error.code, logging.ERROR)
