"""
Request Executor Tests
----------------------
URL/header/body building, authentication, retry classification,
backoff schedule and the call deadline.
"""

from pathlib import Path
from datetime import datetime
import asyncio
import base64
import json
import sys

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from api.auth import ApiKeyAuth, BasicAuth, BearerAuth, CustomAuth, OAuth2Auth
from api.client import ClientConfig
from api.executor import RequestExecutor, build_url, decode_body
from api.models import APIRequest
from api.oauth2 import OAuth2Config, OAuth2TokenManager
from core.errors import (
    AuthenticationError, ErrorCode, HTTPError, RequestTimeoutError, TokenFetchError,
    TransportError, ValidationError,
)
from conftest import RecordingHandler


def executor(handler, clock, sleep, **overrides) -> RequestExecutor:
    overrides.setdefault("base_url", "https://api.test/v1")
    overrides.setdefault("retry_delay", 1.0)
    config = ClientConfig(**overrides)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RequestExecutor(
        config,
        http,
        tokens=OAuth2TokenManager(http=http, clock=clock),
        sleep=sleep,
        clock=clock,
    )


class TestRequestBuilding:
    """URL, headers and body."""

    def test_build_url(self):
        """Relative paths join onto the base URL; absolute URLs pass through."""
        assert build_url("https://api.test/v1/", "/users") == "https://api.test/v1/users"
        assert build_url("https://api.test/v1", "users") == "https://api.test/v1/users"
        assert build_url("https://api.test/v1", "https://other.test/x") == "https://other.test/x"

    @pytest.mark.asyncio
    async def test_params_and_headers_merged(self, clock, sleep):
        """Request headers override client defaults; params go in the query."""
        handler = RecordingHandler()
        ex = executor(handler, clock, sleep, headers={"X-Client": "a", "X-Shared": "client"})

        await ex.execute(APIRequest(
            method="GET", url="/items", params={"page": 2, "skip": None},
            headers={"X-Shared": "request"},
        ))

        sent = handler.requests[0]
        assert str(sent.url) == "https://api.test/v1/items?page=2"
        assert sent.headers["X-Client"] == "a"
        assert sent.headers["X-Shared"] == "request"
        assert sent.headers["User-Agent"].startswith("resilient-api-client")

    @pytest.mark.asyncio
    async def test_json_body(self, clock, sleep):
        """Dict bodies are sent as JSON."""
        handler = RecordingHandler()
        ex = executor(handler, clock, sleep)

        await ex.execute(APIRequest(method="POST", url="/items", data={"name": "x"}))

        sent = handler.requests[0]
        assert json.loads(sent.content) == {"name": "x"}
        assert sent.headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_form_body(self, clock, sleep):
        """Dict bodies are form-encoded when the content type says so."""
        handler = RecordingHandler()
        ex = executor(handler, clock, sleep, headers={"Content-Type": "application/x-www-form-urlencoded"})

        await ex.execute(APIRequest(method="POST", url="/charges", data={"amount": "100"}))

        assert handler.requests[0].content == b"amount=100"

    @pytest.mark.asyncio
    async def test_raw_body_and_bodyless_get(self, clock, sleep):
        """Strings go out raw; GET never carries a body."""
        handler = RecordingHandler()
        ex = executor(handler, clock, sleep)

        await ex.execute(APIRequest(method="PUT", url="/raw", data="plain text"))
        await ex.execute(APIRequest(method="GET", url="/raw", data={"ignored": True}))

        assert handler.requests[0].content == b"plain text"
        assert handler.requests[1].content == b""

    @pytest.mark.asyncio
    async def test_unencodable_body_is_validation_error(self, clock, sleep):
        """A body JSON cannot encode fails before any network attempt."""
        handler = RecordingHandler()
        ex = executor(handler, clock, sleep)

        with pytest.raises(ValidationError) as exc_info:
            await ex.execute(APIRequest(method="POST", url="/items", data={"when": datetime(2024, 1, 1)}))

        assert isinstance(exc_info.value.cause, TypeError)
        assert handler.calls == 0
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_invalid_url_is_validation_error(self, clock, sleep):
        """URLs httpx refuses to parse are caller errors."""
        handler = RecordingHandler()
        ex = executor(handler, clock, sleep)

        with pytest.raises(ValidationError) as exc_info:
            await ex.execute(APIRequest(method="GET", url="/items\x00"))

        assert isinstance(exc_info.value.cause, httpx.InvalidURL)
        assert handler.calls == 0

    def test_decode_by_content_type(self):
        """JSON, text and bytes are decoded by content type."""
        assert decode_body(httpx.Response(200, json={"a": 1})) == {"a": 1}
        assert decode_body(httpx.Response(200, text="hi")) == "hi"
        assert decode_body(httpx.Response(200, content=b"\x00\x01")) == b"\x00\x01"


class TestAuthentication:
    """Auth strategies applied to outbound headers."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("auth,header,expected", [
        (BearerAuth("tok"), "Authorization", "Bearer tok"),
        (BasicAuth("user", "pw"), "Authorization", "Basic " + base64.b64encode(b"user:pw").decode()),
        (ApiKeyAuth("k-1"), "X-API-Key", "k-1"),
        (ApiKeyAuth("k-2", header_name="X-Token"), "X-Token", "k-2"),
    ])
    async def test_static_strategies(self, clock, sleep, auth, header, expected):
        """Static credentials become headers."""
        handler = RecordingHandler()
        ex = executor(handler, clock, sleep, auth=auth)

        await ex.execute(APIRequest(method="GET", url="/me"))

        assert handler.requests[0].headers[header] == expected

    @pytest.mark.asyncio
    async def test_custom_authenticator(self, clock, sleep):
        """Custom authenticators receive the request and return headers."""
        class Signer:
            async def authenticate(self, request):
                return {"X-Signature": f"sig:{request.method}:{request.url}"}

        handler = RecordingHandler()
        ex = executor(handler, clock, sleep, auth=CustomAuth(Signer()))

        await ex.execute(APIRequest(method="DELETE", url="/items/1"))

        assert handler.requests[0].headers["X-Signature"] == "sig:DELETE:/items/1"

    @pytest.mark.asyncio
    async def test_oauth2_bearer(self, clock, sleep):
        """OAuth2 tokens are fetched once and sent as bearer tokens."""
        def handler(request):
            if request.url.path == "/oauth/token":
                return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})
            return httpx.Response(200, json={"auth": request.headers["Authorization"]})

        ex = executor(handler, clock, sleep, auth=OAuth2Auth(OAuth2Config(
            client_id="c", client_secret="s", token_url="https://auth.test/oauth/token",
        )))

        response = await ex.execute(APIRequest(method="GET", url="/me"))

        assert response.data == {"auth": "Bearer abc"}

    @pytest.mark.asyncio
    async def test_token_failure_not_retried(self, clock, sleep):
        """A failing token endpoint is fatal and the API is never called."""
        handler = RecordingHandler(httpx.Response(500))
        ex = executor(handler, clock, sleep, auth=OAuth2Auth(OAuth2Config(
            client_id="c", client_secret="s", token_url="https://auth.test/oauth/token",
        )))

        with pytest.raises(TokenFetchError):
            await ex.execute(APIRequest(method="GET", url="/me"))

        assert handler.calls == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_authenticator_failure_classified(self, clock, sleep):
        """An exception inside a custom authenticator becomes AuthenticationError."""
        class BrokenSigner:
            async def authenticate(self, request):
                raise KeyError("signing-key")

        handler = RecordingHandler()
        ex = executor(handler, clock, sleep, auth=CustomAuth(BrokenSigner()))

        with pytest.raises(AuthenticationError) as exc_info:
            await ex.execute(APIRequest(method="GET", url="/me"))

        assert exc_info.value.code == ErrorCode.AUTH_FAILED
        assert isinstance(exc_info.value.cause, KeyError)
        assert not exc_info.value.retryable
        assert handler.calls == 0


class TestRetries:
    """Retry classification and backoff."""

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self, clock, sleep):
        """503 twice then 200: three attempts, delays 1s then 2s."""
        handler = RecordingHandler(
            httpx.Response(503), httpx.Response(503), httpx.Response(200, json={"ok": 1}),
        )
        ex = executor(handler, clock, sleep, max_retries=3)

        response = await ex.execute(APIRequest(method="GET", url="/flaky"))

        assert response.status == 200
        assert handler.calls == 3
        assert sleep.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 409, 429, 500, 502])
    async def test_retryable_statuses(self, clock, sleep, status):
        """Retryable statuses are attempted max_retries + 1 times."""
        handler = RecordingHandler(httpx.Response(status))
        ex = executor(handler, clock, sleep, max_retries=2)

        with pytest.raises(HTTPError) as exc_info:
            await ex.execute(APIRequest(method="GET", url="/x"))

        assert handler.calls == 3
        assert exc_info.value.status == status
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    async def test_client_errors_fail_fast(self, clock, sleep, status):
        """Other 4xx statuses are not retried."""
        handler = RecordingHandler(httpx.Response(status, json={"error": "nope"}))
        ex = executor(handler, clock, sleep, max_retries=3)

        with pytest.raises(HTTPError) as exc_info:
            await ex.execute(APIRequest(method="GET", url="/x"))

        assert handler.calls == 1
        assert exc_info.value.response.data == {"error": "nope"}
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_per_request_retry_override(self, clock, sleep):
        """retries=0 on the request disables retrying."""
        handler = RecordingHandler(httpx.Response(500))
        ex = executor(handler, clock, sleep, max_retries=5)

        with pytest.raises(HTTPError):
            await ex.execute(APIRequest(method="GET", url="/x", retries=0))

        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_transport_error_retried_then_raised(self, clock, sleep):
        """Connection failures are retried and surface as TransportError."""
        handler = RecordingHandler(httpx.ConnectError("refused"))
        ex = executor(handler, clock, sleep, max_retries=1)

        with pytest.raises(TransportError) as exc_info:
            await ex.execute(APIRequest(method="GET", url="/x"))

        assert handler.calls == 2
        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_transport_error_fatal_when_configured(self, clock, sleep):
        """retry_on_transport_error=False makes connection failures fatal."""
        handler = RecordingHandler(httpx.ConnectError("refused"))
        ex = executor(handler, clock, sleep, max_retries=3, retry_on_transport_error=False)

        with pytest.raises(TransportError) as exc_info:
            await ex.execute(APIRequest(method="GET", url="/x"))

        assert handler.calls == 1
        assert exc_info.value.code == ErrorCode.TRANSPORT_ERROR

    @pytest.mark.asyncio
    async def test_read_timeout_is_retryable(self, clock, sleep):
        """A transport-level timeout is classified as a retryable timeout."""
        handler = RecordingHandler(httpx.ReadTimeout("slow"), httpx.Response(200, json={}))
        ex = executor(handler, clock, sleep, max_retries=1)

        response = await ex.execute(APIRequest(method="GET", url="/x"))

        assert response.status == 200
        assert handler.calls == 2


class TestDeadline:
    """One deadline covers every attempt."""

    @pytest.mark.asyncio
    async def test_backoff_never_outlives_deadline(self, clock, sleep):
        """Retries stop when the next backoff would pass the deadline."""
        handler = RecordingHandler(httpx.Response(503))
        ex = executor(handler, clock, sleep, max_retries=10, timeout=5.0)

        with pytest.raises(HTTPError):
            await ex.execute(APIRequest(method="GET", url="/x"))

        # Delays 1 + 2 fit in 5s; the next (4s) would not
        assert sleep.calls == [1.0, 2.0]
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_hanging_call_times_out(self):
        """A call exceeding its timeout raises RequestTimeoutError."""
        async def hang(request):
            await asyncio.sleep(10)
            return httpx.Response(200)

        ex = RequestExecutor(
            ClientConfig(base_url="https://api.test", timeout=0.05, max_retries=3),
            httpx.AsyncClient(transport=httpx.MockTransport(hang)),
        )

        with pytest.raises(RequestTimeoutError) as exc_info:
            await ex.execute(APIRequest(method="GET", url="/slow"))

        assert exc_info.value.code == ErrorCode.TIMEOUT

    @pytest.mark.asyncio
    async def test_attempt_timeout_follows_call_deadline(self, clock, sleep):
        """Each attempt gets the time left on the call, not the client default."""
        seen = []

        def handler(request):
            seen.append(request.extensions["timeout"]["read"])
            return httpx.Response(503) if len(seen) == 1 else httpx.Response(200, json={})

        config = ClientConfig(base_url="https://api.test", timeout=5.0, retry_delay=1.0)
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=config.timeout)
        ex = RequestExecutor(config, http, sleep=sleep, clock=clock)

        await ex.execute(APIRequest(method="GET", url="/report", timeout=30.0))

        assert seen == [30.0, 29.0]

    @pytest.mark.asyncio
    async def test_timing_recorded(self, clock, sleep):
        """Successful responses carry timing from the injected clock."""
        def handler(request):
            clock.advance(0.25)
            return httpx.Response(200, json={})

        ex = executor(handler, clock, sleep)

        response = await ex.execute(APIRequest(method="GET", url="/x"))

        assert response.timing.duration == 0.25
        assert response.timing.duration_ms == 250.0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
