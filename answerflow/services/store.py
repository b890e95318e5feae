"""Result cache, rate limiter and usage counter.

The protocols are what the answer pipeline depends on; the in-memory
implementations back a single-process deployment and the tests. None of them
lock: every operation completes without awaiting, so it is atomic on the
event loop.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Protocol, Tuple

from answerflow.models import CachedResult

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class ResultCache(Protocol):
    async def get(self, key: str) -> Optional[CachedResult]:
        ...

    async def set(self, key: str, value: CachedResult) -> bool:
        ...


class RateLimiter(Protocol):
    async def check(self, identity: str) -> bool:
        ...


class UsageCounter(Protocol):
    async def increment(self, user_id: str) -> int:
        ...


class InMemoryResultCache:
    """TTL cache keyed by the sha256 of the composite cache key."""

    def __init__(self, ttl_seconds: int, clock: Clock = time.monotonic):
        self._entries: Dict[str, Tuple[CachedResult, float]] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    def _make_key(self, key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    async def get(self, key: str) -> Optional[CachedResult]:
        hashed = self._make_key(key)
        entry = self._entries.get(hashed)
        if entry is None:
            return None
        value, expiry = entry
        if self._clock() < expiry:
            return value
        del self._entries[hashed]
        return None

    async def set(self, key: str, value: CachedResult) -> bool:
        now = self._clock()
        expired = [hashed for hashed, (_, expiry) in self._entries.items() if expiry <= now]
        for hashed in expired:
            del self._entries[hashed]
        self._entries[self._make_key(key)] = (value, now + self._ttl)
        return True

    def __len__(self) -> int:
        return len(self._entries)


class SlidingWindowRateLimiter:
    """Admit at most ``limit`` requests per identity within any ``window_seconds`` span.

    Identities with no hit inside the window are forgotten, swept at most once per window.
    """

    def __init__(self, limit: int, window_seconds: float, clock: Clock = time.monotonic):
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._next_sweep = clock() + window_seconds

    async def check(self, identity: str) -> bool:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        hits = self._hits.setdefault(identity, deque())
        while hits and hits[0] <= now - self._window:
            hits.popleft()
        if len(hits) >= self._limit:
            logger.info("Rate limit exceeded for %s", identity)
            return False
        hits.append(now)
        return True

    def _sweep(self, now: float) -> None:
        stale = [identity for identity, hits in self._hits.items() if not hits or hits[-1] <= now - self._window]
        for identity in stale:
            del self._hits[identity]
        self._next_sweep = now + self._window

    def __len__(self) -> int:
        return len(self._hits)


class InMemoryUsageCounter:
    def __init__(self) -> None:
        self._counts: Dict[str, int] = defaultdict(int)

    async def increment(self, user_id: str) -> int:
        self._counts[user_id] += 1
        return self._counts[user_id]

    def count(self, user_id: str) -> int:
        return self._counts.get(user_id, 0)
