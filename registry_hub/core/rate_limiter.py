"""Outbound rate limiting for the source clients.

A sliding window is kept per key (``"<source>:<caller>"``).  The window
state lives in a backend: ``InMemorySlidingWindow`` for a single process,
``RedisSlidingWindow`` when several instances must share one budget.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of rate limit check."""

    allowed: bool
    remaining: int
    limit: int
    retry_after: float = 0.0  # Seconds until the oldest request leaves the window


def make_key(source: str, caller: str = "anonymous") -> str:
    """Rate limit key for ``source`` on behalf of ``caller``."""
    return f"{source}:{caller or 'anonymous'}"


class RateLimitBackend(ABC):
    """Storage of the per-key sliding windows."""

    @abstractmethod
    async def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        """Record a request for ``key`` if the window has room."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget all requests recorded for ``key``."""

    async def purge(self) -> int:
        """Drop keys with no requests left in their window."""
        return 0

    async def close(self) -> None:
        return None


class InMemorySlidingWindow(RateLimitBackend):
    """Sliding window rate limiter kept in process memory.

    Every key maps to an ordered deque of request timestamps.  All access
    goes through one ``asyncio.Lock`` so concurrent callers sharing a key
    never over-admit.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """Initialize sliding window backend.

        Args:
            clock: Monotonic time source (seconds)
        """
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _evict(self, timestamps: Deque[float], window_start: float) -> None:
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()

    async def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        """Check if request is allowed using sliding window."""
        async with self._lock:
            now = self._clock()
            timestamps = self._requests.setdefault(key, deque())
            self._windows[key] = window
            self._evict(timestamps, now - window)

            if len(timestamps) < limit:
                timestamps.append(now)
                return RateLimitResult(
                    allowed=True,
                    remaining=limit - len(timestamps),
                    limit=limit,
                )

            oldest = timestamps[0] if timestamps else now
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=limit,
                retry_after=max(0.0, oldest + window - now),
            )

    async def reset(self, key: str) -> None:
        """Reset sliding window for a key."""
        async with self._lock:
            self._requests.pop(key, None)
            self._windows.pop(key, None)

    async def purge(self) -> int:
        async with self._lock:
            now = self._clock()
            empty = []
            for key, timestamps in self._requests.items():
                self._evict(timestamps, now - self._windows.get(key, 0.0))
                if not timestamps:
                    empty.append(key)
            for key in empty:
                del self._requests[key]
                self._windows.pop(key, None)
            return len(empty)

    def __len__(self) -> int:
        return len(self._requests)


class RedisSlidingWindow(RateLimitBackend):
    """Redis rate limit backend for distributed deployments."""

    def __init__(self, redis_url: str, key_prefix: str = "ratelimit:", client=None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._redis = client

    async def _get_redis(self):
        """Get or create Redis connection."""
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self.redis_url)
        return self._redis

    async def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        """Check if request is allowed using a Redis sorted set."""
        redis = await self._get_redis()
        full_key = f"{self.key_prefix}{key}"
        now = time.time()
        # One member per request, even within the same microsecond
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        # Use Redis transaction for atomic operations
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(full_key, 0, now - window)
            pipe.zcard(full_key)
            pipe.zadd(full_key, {member: now})
            pipe.expire(full_key, int(window) + 1)
            pipe.zrange(full_key, 0, 0, withscores=True)
            results = await pipe.execute()

        current_count = int(results[1])
        if current_count >= limit:
            await redis.zrem(full_key, member)
            oldest = results[4][0][1] if results[4] else now
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=limit,
                retry_after=max(0.0, float(oldest) + window - now),
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(0, limit - current_count - 1),
            limit=limit,
        )

    async def reset(self, key: str) -> None:
        redis = await self._get_redis()
        await redis.delete(f"{self.key_prefix}{key}")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class RateLimiter:
    """Per-source, per-caller outbound rate limits.

    Created once at process start and shared by every source client.
    ``start()`` launches the periodic purge of idle keys; ``stop()``
    cancels it and closes the backend.
    """

    def __init__(
        self,
        backend: Optional[RateLimitBackend] = None,
        window_seconds: float = 60,
        max_requests: int = 100,
        source_limits: Optional[Dict[str, int]] = None,
        purge_interval_seconds: float = 300,
    ) -> None:
        """Initialize rate limiter.

        Args:
            backend: Window storage (in-memory by default)
            window_seconds: Sliding window size
            max_requests: Requests allowed per window and key
            source_limits: Per-source overrides of ``max_requests``
            purge_interval_seconds: Interval of the idle key purge
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.backend = backend if backend is not None else InMemorySlidingWindow()
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.source_limits = dict(source_limits or {})
        self.purge_interval_seconds = purge_interval_seconds
        self._purge_task: Optional[asyncio.Task] = None

        # Statistics
        self._stats: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"allowed": 0, "rejected": 0}
        )

    def limit_for(self, key: str) -> int:
        source = key.split(":", 1)[0]
        return self.source_limits.get(source, self.max_requests)

    async def _check(self, key: str) -> RateLimitResult:
        result = await self.backend.check(key, self.limit_for(key), self.window_seconds)
        prefix = key.split(":", 1)[0]
        if result.allowed:
            self._stats[prefix]["allowed"] += 1
        else:
            self._stats[prefix]["rejected"] += 1
        return result

    async def allow(self, key: str) -> bool:
        """Accept or reject one request for ``key`` without waiting."""
        result = await self._check(key)
        if not result.allowed:
            self.logger.debug("Rate limit reached for %s (retry in %.2fs)", key, result.retry_after)
        return result.allowed

    async def acquire(self, key: str, wait: float = 0.5) -> bool:
        """Wait up to ``wait`` seconds for a permit.

        Args:
            key: Rate limit key
            wait: Maximum time to wait in seconds

        Returns:
            True if a permit was granted
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, wait)

        while True:
            result = await self._check(key)
            if result.allowed:
                return True

            remaining = deadline - loop.time()
            if remaining <= 0 or result.retry_after > remaining:
                self.logger.warning(
                    "Rate limit permit for %s not available within %.2fs", key, wait
                )
                return False

            await asyncio.sleep(max(result.retry_after, 0.01))

    async def reset(self, key: str) -> None:
        await self.backend.reset(key)

    async def purge(self) -> int:
        """Remove idle keys from the backend."""
        removed = await self.backend.purge()
        if removed:
            self.logger.debug("Purged %d idle rate limit keys", removed)
        return removed

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.purge_interval_seconds)
            await self.purge()

    def start(self) -> None:
        """Start the periodic purge task."""
        if self._purge_task is None or self._purge_task.done():
            self._purge_task = asyncio.create_task(self._purge_loop())

    async def stop(self) -> None:
        """Stop the purge task and release the backend."""
        if self._purge_task is not None:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None
        await self.backend.close()

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Get rate limiting statistics.

        Returns:
            Allowed and rejected counts per source
        """
        return {prefix: dict(counts) for prefix, counts in self._stats.items()}

    def reset_stats(self) -> None:
        """Reset statistics."""
        self._stats.clear()
