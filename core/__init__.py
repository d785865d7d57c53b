# Core module - Transport-independent resilience primitives

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .errors import (
    APIError, AuthenticationError, CircuitOpenError, ErrorCode, HTTPError,
    RateLimitExceeded, RequestTimeoutError, TokenFetchError, TransportError,
    ValidationError,
)

__all__ = [
    "CircuitBreaker", "CircuitBreakerConfig", "CircuitState",
    "APIError", "ErrorCode", "ValidationError", "RateLimitExceeded",
    "RequestTimeoutError", "HTTPError", "CircuitOpenError",
    "TransportError", "TokenFetchError", "AuthenticationError",
]
