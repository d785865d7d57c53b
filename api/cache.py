"""
Response Cache
--------------
Bounded in-memory cache for successful responses, keyed by request
fingerprint.

Eviction runs only when inserting an unseen key into a full cache:
- lru: least recently accessed (get or set)
- lfu: lowest hit counter
- fifo: earliest created

Entries expire lazily: a get past expiry deletes the entry and misses.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING
import hashlib
import itertools
import json
import logging
import time

if TYPE_CHECKING:
    from api.models import APIRequest, APIResponse

KeyFunc = Callable[["APIRequest"], str]
CachePredicate = Callable[["APIRequest", "APIResponse"], bool]

# Side-effect-free methods cached by default
CACHEABLE_METHODS = frozenset({"GET", "HEAD"})


class EvictionPolicy(str, Enum):
    LRU = "lru"
    LFU = "lfu"
    FIFO = "fifo"


@dataclass
class CacheConfig:
    """Response cache configuration."""
    enabled: bool = True
    ttl: float = 300.0         # Seconds
    max_size: int = 1000
    strategy: EvictionPolicy = EvictionPolicy.LRU
    include_body: bool = True  # Hash the body of non-GET requests into the key
    key_func: Optional[KeyFunc] = field(default=None, repr=False)
    should_cache: Optional[CachePredicate] = field(default=None, repr=False)

    def __post_init__(self):
        self.strategy = EvictionPolicy(self.strategy)
        if self.max_size <= 0:
            raise ValueError("cache max_size must be positive")


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    created_at: float
    seq: int
    hits: int = 0


def fingerprint(request: "APIRequest", include_body: bool = True) -> str:
    """
    Deterministic hash of the request shape.

    The body only participates for methods that carry one, and only when
    include_body is set.
    """
    shape = {
        "method": request.method,
        "url": request.url,
        "params": request.params,
        "data": request.data if include_body and request.method not in ("GET", "HEAD") else None,
    }
    encoded = json.dumps(shape, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def default_should_cache(request: "APIRequest", response: "APIResponse") -> bool:
    """Only successful responses to safe methods are cached."""
    return request.method in CACHEABLE_METHODS and response.ok


class ResponseCache:
    """
    In-memory response cache with pluggable eviction.

    Thread-safe via a single lock; no operation awaits.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()  # Access order, oldest first
        self._seq = itertools.count()
        self._hits = 0
        self._misses = 0
        self._lock = Lock()
        self._logger = logging.getLogger("apiclient.cache")

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def key_for(self, request: "APIRequest") -> str:
        """Cache key for a request, honouring a configured key function."""
        if self.config.key_func is not None:
            return self.config.key_func(request)
        return fingerprint(request, include_body=self.config.include_body)

    def should_cache(self, request: "APIRequest", response: "APIResponse") -> bool:
        if not self.config.enabled or request.cache is False:
            return False
        predicate = self.config.should_cache or default_should_cache
        return predicate(request, response)

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or expiry."""
        if not self.config.enabled:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return None

            entry.hits += 1
            self._hits += 1
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value, evicting one entry first if full and the key is new."""
        if not self.config.enabled:
            return

        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self.config.ttl)

        with self._lock:
            if key not in self._entries and len(self._entries) >= self.config.max_size:
                self._evict()

            self._entries[key] = CacheEntry(
                value=value,
                expires_at=expires_at,
                created_at=now,
                seq=next(self._seq),
            )
            self._entries.move_to_end(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def _evict(self) -> None:
        """Evict one entry per policy. Caller holds the lock."""
        if not self._entries:
            return

        strategy = self.config.strategy
        if strategy == EvictionPolicy.LFU:
            victim = min(self._entries.items(), key=lambda kv: (kv[1].hits, kv[1].seq))[0]
        elif strategy == EvictionPolicy.FIFO:
            victim = min(self._entries.items(), key=lambda kv: (kv[1].created_at, kv[1].seq))[0]
        else:
            victim = next(iter(self._entries))

        del self._entries[victim]
        self._logger.debug(f"Cache eviction ({strategy.value}): {victim[:16]}")

    def purge_expired(self) -> int:
        """Remove every expired entry. Returns count removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def stats(self) -> Dict[str, Any]:
        """Size, hit rate and per-entry details of live entries."""
        self.purge_expired()
        now = self._clock()
        with self._lock:
            lookups = self._hits + self._misses
            entries: List[Dict[str, Any]] = [
                {"key": key, "hits": entry.hits, "age": now - entry.created_at}
                for key, entry in self._entries.items()
            ]
            return {
                "size": len(self._entries),
                "max_size": self.config.max_size,
                "strategy": self.config.strategy.value,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
                "entries": entries,
            }
