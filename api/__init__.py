# API module - Resilient outbound HTTP client
# One client per provider: rate limit, cache, circuit breaker, retries

from .auth import (
    ApiKeyAuth, AuthStrategy, Authenticator, BasicAuth, BearerAuth,
    CustomAuth, NoAuth, OAuth2Auth,
)
from .cache import CacheConfig, EvictionPolicy, ResponseCache
from .client import APIClient, ClientConfig
from .models import APIRequest, APIResponse, Timing
from .oauth2 import OAuth2Config, OAuth2TokenManager
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimitStrategy
from .registry import ClientRegistry, get_registry, init_registry, shutdown_registry

__all__ = [
    # Client
    "APIClient",
    "ClientConfig",
    "APIRequest",
    "APIResponse",
    "Timing",
    # Auth
    "AuthStrategy",
    "Authenticator",
    "NoAuth",
    "BearerAuth",
    "BasicAuth",
    "ApiKeyAuth",
    "OAuth2Auth",
    "CustomAuth",
    "OAuth2Config",
    "OAuth2TokenManager",
    # Resilience
    "RateLimiter",
    "RateLimitConfig",
    "RateLimitStrategy",
    "ResponseCache",
    "CacheConfig",
    "EvictionPolicy",
    # Registry
    "ClientRegistry",
    "init_registry",
    "get_registry",
    "shutdown_registry",
]
