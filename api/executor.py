"""
Request Executor
----------------
Performs one logical call: URL building, header merge, authentication,
body encoding, the network round trip, and retry with backoff.

Design:
- Authentication runs once, before the first attempt
- The httpx request is built once; encoding failures are ValidationErrors
- One deadline spans every attempt and every backoff sleep
- Attempt n (0-based) is followed by a sleep of retry_delay * 2**n
- Only errors flagged retryable are retried; the last one is raised
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional
import asyncio
import logging
import time

import httpx

from api.auth import auth_headers
from api.models import BODYLESS_METHODS, APIRequest, APIResponse, Timing
from api.oauth2 import OAuth2TokenManager
from core.errors import (
    APIError, AuthenticationError, HTTPError, RequestTimeoutError, TransportError,
    ValidationError,
)

if TYPE_CHECKING:
    from api.client import ClientConfig

SleepFunc = Callable[[float], Awaitable[None]]

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def build_url(base_url: str, url: str) -> str:
    """Join a relative path onto the base URL. Absolute URLs pass through."""
    if url.startswith(("http://", "https://")) or not base_url:
        return url
    return f"{base_url.rstrip('/')}/{url.lstrip('/')}"


def encode_body(method: str, data: Any, headers: httpx.Headers) -> Dict[str, Any]:
    """
    httpx keyword arguments for the request body.

    str/bytes go out raw, mappings as a form when the content type says
    so, everything else as JSON. GET and HEAD never carry a body.
    """
    if data is None or method in BODYLESS_METHODS:
        return {}

    if isinstance(data, (str, bytes)):
        return {"content": data}

    content_type = headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPE) and isinstance(data, dict):
        return {"data": data}

    headers.setdefault("Content-Type", "application/json")
    return {"json": data}


def decode_body(response: httpx.Response) -> Any:
    """JSON for application/json, text for text/*, raw bytes otherwise."""
    content_type = response.headers.get("content-type", "").lower()

    if "json" in content_type:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    if content_type.startswith("text/"):
        return response.text

    return response.content


def _clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not params:
        return None
    return {k: v for k, v in params.items() if v is not None}


class RequestExecutor:
    """Executes requests for one client against a shared httpx.AsyncClient."""

    def __init__(
        self,
        config: "ClientConfig",
        http: httpx.AsyncClient,
        tokens: Optional[OAuth2TokenManager] = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        name: str = "default",
    ):
        self.config = config
        self._http = http
        self._tokens = tokens
        self._sleep = sleep
        self._clock = clock
        self.name = name
        self._logger = logging.getLogger(f"apiclient.executor.{name}")

    async def execute(self, request: APIRequest) -> APIResponse:
        """
        Run the request with retries under a single deadline.

        Raises the last classified APIError when attempts are exhausted,
        RequestTimeoutError when the deadline expires, ValidationError when
        the request cannot be encoded.
        """
        config = self.config
        timeout = request.timeout if request.timeout is not None else config.timeout
        max_retries = request.retries if request.retries is not None else config.max_retries

        start = self._clock()
        deadline = start + timeout

        url = build_url(config.base_url, request.url)
        # Auth is applied once; a token failure is fatal and never retried
        credentials = await self._authenticate(request)
        prepared = self._prepare(request, url, credentials)

        attempt = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise RequestTimeoutError(f"Request timed out after {timeout}s", request=request)

            if config.log_requests:
                self._logger.info(
                    f"{request.method} {url} (attempt {attempt + 1}/{max_retries + 1})",
                    extra={"client": self.name, "method": request.method, "url": url, "attempt": attempt + 1},
                )

            # Each attempt gets the time left on the call deadline, not the client default
            prepared.extensions["timeout"] = httpx.Timeout(remaining).as_dict()
            try:
                raw = await asyncio.wait_for(self._http.send(prepared), timeout=remaining)
            except asyncio.TimeoutError as e:
                # The call deadline itself expired: no time left for another attempt
                error = RequestTimeoutError(f"Request timed out after {timeout}s", request=request)
                raise error from e
            except httpx.TimeoutException as e:
                error = RequestTimeoutError(f"Request timed out: {e}", request=request)
                error.__cause__ = e
            except httpx.HTTPError as e:
                error = TransportError(
                    f"Transport error: {type(e).__name__}: {e}",
                    request=request,
                    retryable=config.retry_on_transport_error,
                )
                error.__cause__ = e
            else:
                response = self._to_response(raw, request, start)
                if response.ok:
                    if config.log_responses:
                        self._logger.info(
                            f"{request.method} {url} -> {response.status} ({response.timing.duration_ms:.0f}ms)",
                            extra={
                                "client": self.name,
                                "status": response.status,
                                "duration_ms": response.timing.duration_ms,
                            },
                        )
                    return response
                error = HTTPError.from_status(response.status, response.reason, response=response, request=request)

            delay = config.retry_delay * (2 ** attempt)
            if not self._should_retry(error, attempt, max_retries, delay, deadline):
                raise error

            self._logger.warning(
                f"Retrying {request.method} {url} in {delay:.2f}s after {error.code.value}: {error.message}",
                extra={"client": self.name, "attempt": attempt + 1, "error_code": error.code.value},
            )
            await self._sleep(delay)
            attempt += 1

    async def _authenticate(self, request: APIRequest) -> Dict[str, str]:
        try:
            return await auth_headers(self.config.auth, request, self._tokens)
        except APIError:
            raise
        except Exception as e:
            raise AuthenticationError(
                f"Authentication failed: {type(e).__name__}: {e}", request=request
            ) from e

    def _prepare(self, request: APIRequest, url: str, credentials: Dict[str, str]) -> httpx.Request:
        """Build the outgoing request once; encoding problems are caller errors."""
        try:
            headers = httpx.Headers(self.config.headers)
            headers.update(request.headers)
            headers.update(credentials)
            body = encode_body(request.method, request.data, headers)
            return self._http.build_request(
                request.method,
                url,
                params=_clean_params(request.params),
                headers=headers,
                **body,
            )
        except (TypeError, ValueError, httpx.InvalidURL) as e:
            raise ValidationError(
                f"Invalid request: {type(e).__name__}: {e}",
                request=request,
                details={"errors": [{"field": "request", "message": str(e)}]},
            ) from e

    def _should_retry(self, error: APIError, attempt: int, max_retries: int, delay: float, deadline: float) -> bool:
        if not error.retryable or attempt >= max_retries:
            return False
        # A backoff that would outlive the call deadline ends the retries
        return self._clock() + delay < deadline

    def _to_response(self, raw: httpx.Response, request: APIRequest, start: float) -> APIResponse:
        end = self._clock()
        return APIResponse(
            data=decode_body(raw),
            status=raw.status_code,
            reason=raw.reason_phrase,
            headers=dict(raw.headers),
            request=request,
            timing=Timing(start=start, end=end, duration=end - start),
        )
