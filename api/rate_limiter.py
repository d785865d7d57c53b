"""
Rate Limiter
------------
Per-key admission control for outbound API calls.

Strategies:
- fixed: counter per (key, window start); resets at the window boundary
- sliding: recent admission timestamps per key
- token-bucket: continuous refill at limit / window tokens per second

check_limit() is check-and-admit in one step: an allowed result has
already consumed the slot.
"""

from collections import deque
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Deque, Dict, Optional, Tuple
import logging
import math
import time


class RateLimitStrategy(str, Enum):
    """Supported admission algorithms."""
    FIXED = "fixed"
    SLIDING = "sliding"
    TOKEN_BUCKET = "token-bucket"


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    enabled: bool = True
    requests: int = 100       # Admissions allowed per window
    window: float = 60.0      # Window length in seconds
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING

    def __post_init__(self):
        self.strategy = RateLimitStrategy(self.strategy)
        if self.requests <= 0 or self.window <= 0:
            raise ValueError("rate limit requests and window must be positive")


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission check."""
    allowed: bool
    remaining: int
    reset_at: float  # Clock time at which capacity frees up


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class RateLimiter:
    """
    Multi-strategy rate limiter.

    Thread-safe: every strategy mutates its state under the limiter lock,
    and nothing inside the lock awaits.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._lock = Lock()
        self._logger = logging.getLogger("apiclient.ratelimit")

        self._windows: Dict[Tuple[str, float], int] = {}
        self._timestamps: Dict[str, Deque[float]] = {}
        self._buckets: Dict[str, _Bucket] = {}

        # Tokens per second
        self._rate = self.config.requests / self.config.window

    def check_limit(self, key: str) -> RateLimitResult:
        """Admit or deny one call for the given key."""
        now = self._clock()

        if not self.config.enabled:
            return RateLimitResult(allowed=True, remaining=self.config.requests, reset_at=now)

        with self._lock:
            if self.config.strategy == RateLimitStrategy.FIXED:
                result = self._check_fixed_window(key, now)
            elif self.config.strategy == RateLimitStrategy.TOKEN_BUCKET:
                result = self._check_token_bucket(key, now)
            else:
                result = self._check_sliding_window(key, now)

        if not result.allowed:
            self._logger.debug(f"Rate limit reached for {key}, resets at {result.reset_at:.3f}")
        return result

    def _check_fixed_window(self, key: str, now: float) -> RateLimitResult:
        window = self.config.window
        window_start = math.floor(now / window) * window
        slot = (key, window_start)

        count = self._windows.get(slot, 0)
        allowed = count < self.config.requests
        if allowed:
            count += 1
            self._windows[slot] = count

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.config.requests - count),
            reset_at=window_start + window,
        )

    def _check_sliding_window(self, key: str, now: float) -> RateLimitResult:
        timestamps = self._timestamps.setdefault(key, deque())
        cutoff = now - self.config.window

        # Discard admissions that slid out of the window
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

        allowed = len(timestamps) < self.config.requests
        if allowed:
            timestamps.append(now)

        oldest = timestamps[0] if timestamps else now
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.config.requests - len(timestamps)),
            reset_at=oldest + self.config.window,
        )

    def _check_token_bucket(self, key: str, now: float) -> RateLimitResult:
        capacity = float(self.config.requests)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=capacity, last_refill=now)
            self._buckets[key] = bucket

        self._refill(bucket, now, capacity)

        allowed = bucket.tokens >= 1.0
        if allowed:
            bucket.tokens -= 1.0

        # Time until the next whole token is available
        missing = max(0.0, 1.0 - bucket.tokens)
        return RateLimitResult(
            allowed=allowed,
            remaining=int(bucket.tokens),
            reset_at=now + missing / self._rate,
        )

    def _refill(self, bucket: _Bucket, now: float, capacity: float) -> None:
        """Refill tokens based on elapsed time."""
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(capacity, bucket.tokens + elapsed * self._rate)
        bucket.last_refill = now

    def cleanup(self) -> int:
        """
        Drop state untouched for more than two windows.

        Returns number of keys removed. Safe to call from a background thread.
        """
        now = self._clock()
        cutoff = now - self.config.window * 2
        removed = 0

        with self._lock:
            for slot in [s for s in self._windows if s[1] < cutoff]:
                del self._windows[slot]
                removed += 1

            for key in list(self._timestamps):
                timestamps = self._timestamps[key]
                while timestamps and timestamps[0] < cutoff:
                    timestamps.popleft()
                if not timestamps:
                    del self._timestamps[key]
                    removed += 1

            for key in [k for k, b in self._buckets.items() if b.last_refill < cutoff]:
                del self._buckets[key]
                removed += 1

        if removed:
            self._logger.debug(f"Rate limiter cleanup removed {removed} stale entries")
        return removed

    def tracked_keys(self) -> int:
        """Number of live state entries across all strategies."""
        with self._lock:
            return len(self._windows) + len(self._timestamps) + len(self._buckets)

    def reset(self) -> None:
        """Reset all rate limit state."""
        with self._lock:
            self._windows.clear()
            self._timestamps.clear()
            self._buckets.clear()
