"""
API Client
----------
Resilient client for one upstream provider.

Pipeline per request() call, in order:
1. validate
2. request interceptors
3. cache lookup (a live hit returns immediately)
4. rate limit check (denial never counts as a circuit failure)
5. circuit breaker around the executor (auth, retries, deadline)
6. response or error interceptors
7. cache store
8. metrics and lifecycle events

Each client owns its breaker, limiter, cache and metrics, so one
provider's failures never affect another.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import asyncio
import logging
import time

import httpx

from api.auth import AuthStrategy, NoAuth
from api.cache import CacheConfig, ResponseCache
from api.executor import RequestExecutor, SleepFunc
from api.interceptors import (
    ErrorInterceptor,
    FunctionInterceptor,
    InterceptorChain,
    RequestInterceptor,
    ResponseInterceptor,
)
from api.models import APIRequest, APIResponse, validate_request
from api.oauth2 import OAuth2TokenManager
from api.rate_limiter import RateLimitConfig, RateLimiter
from core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from core.errors import APIError, RateLimitExceeded, log_level_for
from infra.logging import RequestContext
from infra.maintenance import PeriodicTask
from infra.metrics import APIMetrics, MetricsCollector

DEFAULT_USER_AGENT = "resilient-api-client/1.0"

EVENTS = ("success", "error", "cached")

Listener = Callable[[Dict[str, Any]], None]


@dataclass
class ClientConfig:
    """Construction-time configuration of one API client. Durations in seconds."""
    base_url: str = ""
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    auth: AuthStrategy = field(default_factory=NoAuth)
    cache: CacheConfig = field(default_factory=CacheConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    headers: Dict[str, str] = field(default_factory=dict)
    retry_on_transport_error: bool = True
    log_requests: bool = False
    log_responses: bool = False
    maintenance_interval: Optional[float] = 10.0  # None disables the background timer

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must not be negative")
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        headers.update(self.headers)
        self.headers = headers


def _as_interceptor(interceptor):
    if hasattr(interceptor, "transform"):
        return interceptor
    return FunctionInterceptor(interceptor)


class APIClient:
    """
    Orchestrates cache, rate limiter, circuit breaker and executor.

    Safe for many concurrent request() calls on one event loop.

    Usage:
        async with APIClient(ClientConfig(base_url="https://api.example.com"), name="example") as client:
            response = await client.get("/items", params={"page": 1})
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        name: str = "default",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        token_manager: Optional[OAuth2TokenManager] = None,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or ClientConfig()
        self.name = name
        self._clock = clock or time.monotonic
        self._logger = logging.getLogger(f"apiclient.client.{name}")

        self._http = httpx.AsyncClient(transport=transport, timeout=self.config.timeout)
        self._tokens = token_manager or OAuth2TokenManager(http=self._http, clock=clock or time.time)
        self._rate_limiter = rate_limiter or RateLimiter(self.config.rate_limit, clock=clock or time.time)
        self._cache = cache or ResponseCache(self.config.cache, clock=self._clock)
        self._breaker = circuit_breaker or CircuitBreaker.from_config(
            name, self.config.circuit_breaker, clock=self._clock
        )
        self._executor = RequestExecutor(
            self.config,
            self._http,
            tokens=self._tokens,
            sleep=sleep or asyncio.sleep,
            clock=self._clock,
            name=name,
        )
        self._interceptors = InterceptorChain()
        self._metrics = MetricsCollector(name)
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}
        self._maintenance: Optional[PeriodicTask] = None
        self._closed = False

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def closed(self) -> bool:
        return self._closed

    # Public API

    async def request(self, request: APIRequest) -> APIResponse:
        """
        Run one request through the full pipeline.

        Returns the (possibly cached or fallback) response; raises APIError.
        """
        if self._closed:
            raise RuntimeError(f"Client '{self.name}' is closed")
        self._ensure_maintenance()

        with RequestContext():
            return await self._run_pipeline(request)

    async def get(self, url: str, params: Optional[Dict[str, Any]] = None, **options) -> APIResponse:
        return await self.request(APIRequest(method="GET", url=url, params=params, **options))

    async def post(self, url: str, data: Any = None, **options) -> APIResponse:
        return await self.request(APIRequest(method="POST", url=url, data=data, **options))

    async def put(self, url: str, data: Any = None, **options) -> APIResponse:
        return await self.request(APIRequest(method="PUT", url=url, data=data, **options))

    async def patch(self, url: str, data: Any = None, **options) -> APIResponse:
        return await self.request(APIRequest(method="PATCH", url=url, data=data, **options))

    async def delete(self, url: str, **options) -> APIResponse:
        return await self.request(APIRequest(method="DELETE", url=url, **options))

    def add_request_interceptor(
        self, interceptor: Union[RequestInterceptor, Callable[[APIRequest], Awaitable[APIRequest]]]
    ) -> None:
        self._interceptors.request.append(_as_interceptor(interceptor))

    def add_response_interceptor(
        self, interceptor: Union[ResponseInterceptor, Callable[[APIResponse], Awaitable[APIResponse]]]
    ) -> None:
        self._interceptors.response.append(_as_interceptor(interceptor))

    def add_error_interceptor(
        self, interceptor: Union[ErrorInterceptor, Callable[[APIError], Awaitable[Union[APIError, APIResponse]]]]
    ) -> None:
        self._interceptors.error.append(_as_interceptor(interceptor))

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to a lifecycle event: success, error or cached."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}', expected one of {EVENTS}")
        self._listeners[event].append(listener)

    def get_metrics(self) -> APIMetrics:
        """Latest metrics snapshot. Counters are live, the rest as of the last aggregation."""
        return self._metrics.snapshot()

    def refresh_metrics(self) -> APIMetrics:
        """Aggregate now and return the fresh snapshot."""
        self._aggregate_metrics()
        return self._metrics.snapshot()

    def get_cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def clear_cache(self) -> None:
        self._cache.clear()
        self._logger.info("Cache cleared")

    def start_maintenance(self) -> None:
        """Start the background cleanup/aggregation timer."""
        if self.config.maintenance_interval is None:
            return
        if self._maintenance is None:
            self._maintenance = PeriodicTask(
                self.name,
                self.config.maintenance_interval,
                [self.run_maintenance],
            )
        self._maintenance.start()

    def run_maintenance(self) -> None:
        """One maintenance pass: limiter cleanup, cache purge, metrics aggregation."""
        self._rate_limiter.cleanup()
        self._cache.purge_expired()
        self._aggregate_metrics()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._maintenance is not None:
            self._maintenance.stop()
        await self._http.aclose()
        self._logger.debug("Client closed")

    async def __aenter__(self) -> "APIClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    # Pipeline

    async def _run_pipeline(self, request: APIRequest) -> APIResponse:
        validate_request(request)
        request = await self._interceptors.apply_request(request)

        use_cache = self._cache.enabled and request.cache is not False
        cache_key = self._cache.key_for(request) if use_cache else None

        if cache_key is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                response = cached.replace(cached=True)
                self._metrics.record_cached()
                self._logger.debug(f"Cache hit: {request.method} {request.url}")
                self._emit("cached", {"request": request, "response": response})
                return response

        try:
            self._check_rate_limit(request)
        except RateLimitExceeded as error:
            self._metrics.record_error()
            self._log_error(error)
            self._emit("error", {"request": request, "error": error})
            raise

        started = self._clock()
        try:
            response = await self._breaker.execute(lambda: self._executor.execute(request))
        except APIError as error:
            self._metrics.record_error((self._clock() - started) * 1000.0)
            outcome = await self._interceptors.apply_error(error)
            if isinstance(outcome, APIResponse):
                self._logger.info(
                    f"Error interceptor recovered {request.method} {request.url} "
                    f"from {error.code.value}"
                )
                return outcome
            self._log_error(outcome)
            self._emit("error", {"request": request, "error": outcome})
            raise outcome

        response = await self._interceptors.apply_response(response)

        if cache_key is not None and self._cache.should_cache(request, response):
            self._cache.set(cache_key, response)

        self._metrics.record_success(response.timing.duration_ms)
        self._emit("success", {"request": request, "response": response})
        return response

    def _rate_limit_key(self, request: APIRequest) -> str:
        return f"{self.config.base_url}:{request.method}"

    def _check_rate_limit(self, request: APIRequest) -> None:
        result = self._rate_limiter.check_limit(self._rate_limit_key(request))
        self._metrics.record_rate_limit(result.remaining, result.reset_at, self.config.rate_limit.requests)
        if not result.allowed:
            raise RateLimitExceeded(
                reset_at=result.reset_at,
                remaining=result.remaining,
                request=request,
            )

    def _aggregate_metrics(self) -> None:
        self._metrics.aggregate(self._breaker.get_stats())

    def _ensure_maintenance(self) -> None:
        if self._maintenance is None or not self._maintenance.running:
            self.start_maintenance()

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in self._listeners[event]:
            try:
                listener(payload)
            except Exception:
                self._logger.exception(f"Listener for '{event}' failed")

    def _log_error(self, error: APIError) -> None:
        self._logger.log(
            log_level_for(error),
            f"{type(error).__name__}: {error.message}",
            extra={
                "client": self.name,
                "status": error.status,
                "error_code": error.code.value,
                "circuit_state": self._breaker.state.value,
            },
        )
