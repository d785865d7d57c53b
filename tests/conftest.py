"""
Test Configuration
------------------
Shared fixtures for all tests.

Time is always injected: FakeClock replaces the process clock and
FakeSleep records backoff delays instead of waiting. The network is
replaced by httpx.MockTransport, so tests are hermetic.
"""

import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from api.client import APIClient, ClientConfig
from api.rate_limiter import RateLimitConfig


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays and advances the clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        self.clock.advance(delay)


class RecordingHandler:
    """MockTransport handler returning queued responses and recording requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(200, json={"ok": True})
        item = self.responses[0] if len(self.responses) == 1 else self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        # Fresh copy so a queued response can be served more than once
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def make_client(clock, sleep) -> Callable[..., APIClient]:
    """
    Factory for clients wired to a mock transport and fake time.

    Rate limiting is permissive and the maintenance thread is off
    unless a test overrides them.
    """

    def factory(handler, name: str = "test", **overrides) -> APIClient:
        overrides.setdefault("base_url", "https://api.test")
        overrides.setdefault("maintenance_interval", None)
        overrides.setdefault("rate_limit", RateLimitConfig(requests=1000, window=60.0))
        client = APIClient(
            ClientConfig(**overrides),
            name=name,
            transport=httpx.MockTransport(handler),
            clock=clock,
            sleep=sleep,
        )
        return client

    return factory
