"""Response cache for aggregated results.

A ``ResponseCache`` wraps a primary backend (Redis in multi-instance
deployments, process memory otherwise) and an in-process fallback.  Any
backend failure degrades the cache to the fallback and is logged; the
caller never sees a cache error.  Values are stored as JSON, compressed
with zlib above a size threshold.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from registry_hub.core.data_models import AggregatedResult, SourceStatus

logger = logging.getLogger(__name__)

# Default TTL values (in seconds)
DEFAULT_TTL = 300  # 5 minutes
DEFAULT_COMPRESS_THRESHOLD = 16384

_PLAIN = b"j"
_COMPRESSED = b"z"


@dataclass
class CacheEntry:
    """One stored value and the monotonic time it expires at."""

    key: str
    value: bytes
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheBackend(ABC):
    """Key/value storage with TTL."""

    name = "abstract"

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Stored bytes for ``key`` or ``None`` if missing or expired."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``."""

    async def ping(self) -> bool:
        return True

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        return None


class MemoryCacheBackend(CacheBackend):
    """In-process cache with lazy expiry on read and periodic sweep."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[bytes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    async def sweep(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend(CacheBackend):
    """Distributed cache on ``redis.asyncio``."""

    name = "redis"

    def __init__(self, redis_url: str, client=None) -> None:
        self.redis_url = redis_url
        self._redis = client

    async def _get_redis(self):
        """Get or create Redis connection."""
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self.redis_url)
        return self._redis

    async def get(self, key: str) -> Optional[bytes]:
        redis = await self._get_redis()
        return await redis.get(key)

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        redis = await self._get_redis()
        await redis.set(key, value, ex=ttl)

    async def delete_prefix(self, prefix: str) -> int:
        redis = await self._get_redis()
        deleted = 0
        batch = []
        async for key in redis.scan_iter(match=f"{prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await redis.delete(*batch)
                batch = []
        if batch:
            deleted += await redis.delete(*batch)
        return deleted

    async def ping(self) -> bool:
        redis = await self._get_redis()
        return bool(await redis.ping())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def _normalize_param(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split()).casefold()
    if isinstance(value, (list, tuple, set, frozenset)):
        return sorted(_normalize_param(item) for item in value)
    if isinstance(value, dict):
        return {str(k): _normalize_param(v) for k, v in sorted(value.items())}
    return value


def encode_value(value: Any, compress_threshold: int = DEFAULT_COMPRESS_THRESHOLD) -> bytes:
    """Serialize ``value`` to JSON, compressing large payloads."""
    raw = json.dumps(value, separators=(",", ":"), default=str).encode("utf-8")
    if len(raw) > compress_threshold:
        return _COMPRESSED + zlib.compress(raw)
    return _PLAIN + raw


def decode_value(payload: bytes) -> Any:
    """Inverse of ``encode_value``."""
    flag, body = payload[:1], payload[1:]
    if flag == _COMPRESSED:
        body = zlib.decompress(body)
    elif flag != _PLAIN:
        raise ValueError(f"unknown cache payload flag: {flag!r}")
    return json.loads(body.decode("utf-8"))


class ResponseCache:
    """Best-effort cache in front of the aggregator.

    Created once per process and shared by all requests.  ``start()``
    runs the periodic sweep of the in-process store, which also pings a
    degraded primary backend and restores it once it answers again.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        fallback: Optional[MemoryCacheBackend] = None,
        namespace: str = "rh",
        default_ttl: int = DEFAULT_TTL,
        compress_threshold: int = DEFAULT_COMPRESS_THRESHOLD,
        sweep_interval_seconds: float = 60,
        cache_partial: bool = False,
    ) -> None:
        """Initialize the response cache.

        Args:
            backend: Primary backend (in-process memory if not provided)
            fallback: In-process store used while the primary is unreachable
            namespace: Prefix of every key
            default_ttl: Default time-to-live in seconds
            compress_threshold: Payload size above which values are compressed
            sweep_interval_seconds: Interval of the expiry sweep
            cache_partial: Also cache results where a source was not OK
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.backend = backend if backend is not None else MemoryCacheBackend()
        if fallback is not None:
            self.fallback = fallback
        elif isinstance(self.backend, MemoryCacheBackend):
            self.fallback = self.backend
        else:
            self.fallback = MemoryCacheBackend()
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.compress_threshold = compress_threshold
        self.sweep_interval_seconds = sweep_interval_seconds
        self.cache_partial = cache_partial

        self.degraded = False
        self._sweep_task: Optional[asyncio.Task] = None
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._errors = 0

    @property
    def has_fallback(self) -> bool:
        return self.fallback is not self.backend

    def make_key(self, kind: str, **params: Any) -> str:
        """Generate a cache key from a kind and request parameters.

        Strings are trimmed, case-folded and whitespace-collapsed; list
        values and parameter names are sorted, so equivalent requests map
        to the same key.

        Args:
            kind: Key kind (e.g., 'search', 'detail')
            **params: Request parameters

        Returns:
            ``<namespace>:<kind>:<hash>``
        """
        canonical = {
            name: _normalize_param(value)
            for name, value in sorted(params.items())
            if value is not None
        }
        key_string = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
        key_hash = hashlib.sha256(key_string.encode()).hexdigest()[:32]
        return f"{self.namespace}:{kind}:{key_hash}"

    def _degrade(self, operation: str, error: Exception) -> None:
        self._errors += 1
        if not self.degraded:
            self.logger.warning(
                "Cache backend %s failed during %s, falling back to memory: %s",
                self.backend.name,
                operation,
                error,
            )
        self.degraded = True

    def _active(self) -> CacheBackend:
        return self.fallback if self.degraded else self.backend

    async def get(self, key: str) -> Tuple[Optional[Any], bool]:
        """Get a cached value.

        Args:
            key: Cache key from ``make_key``

        Returns:
            ``(value, found)``
        """
        backend = self._active()
        try:
            payload = await backend.get(key)
        except Exception as e:
            self._degrade("get", e)
            payload = await self.fallback.get(key)

        if payload is None:
            self._misses += 1
            self.logger.debug("Cache miss for key: %s", key)
            return None, False

        try:
            value = decode_value(payload)
        except (ValueError, zlib.error) as e:
            self._errors += 1
            self.logger.warning("Discarding undecodable cache entry %s: %s", key, e)
            self._misses += 1
            return None, False

        self._hits += 1
        self.logger.debug("Cache hit for key: %s", key)
        return value, True

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a value in cache.

        Args:
            key: Cache key from ``make_key``
            value: JSON-serializable value
            ttl: Time-to-live in seconds (uses default if not specified)

        Returns:
            True if stored in either backend
        """
        ttl = ttl if ttl is not None else self.default_ttl
        payload = encode_value(value, self.compress_threshold)

        backend = self._active()
        try:
            await backend.set(key, payload, ttl)
        except Exception as e:
            self._degrade("set", e)
            await self.fallback.set(key, payload, ttl)

        self._sets += 1
        self.logger.debug("Cached %d bytes for key: %s (TTL: %ds)", len(payload), key, ttl)
        return True

    async def invalidate_pattern(self, prefix: str) -> int:
        """Invalidate all cache entries starting with ``prefix``.

        Both stores are cleared, since the fallback may hold entries
        written while the primary was unreachable.

        Returns:
            Number of entries invalidated
        """
        deleted = 0
        if self.has_fallback:
            deleted += await self.fallback.delete_prefix(prefix)
        try:
            deleted += await self.backend.delete_prefix(prefix)
        except Exception as e:
            self._degrade("invalidate", e)
        self.logger.info("Invalidated %d cache entries for prefix: %s", deleted, prefix)
        return deleted

    async def clear(self) -> int:
        """Clear every entry of this namespace."""
        return await self.invalidate_pattern(f"{self.namespace}:")

    def is_cacheable(self, result: AggregatedResult) -> bool:
        """Whether ``result`` may be stored.

        Empty results are never cached.  Unless ``cache_partial`` is set,
        every contributing source must have answered OK.
        """
        if not result.records:
            return False
        if self.cache_partial:
            return any(d.status is not SourceStatus.FAILED for d in result.diagnostics.values())
        return result.all_ok

    async def ping(self) -> bool:
        """Check the primary backend, restoring it when it answers."""
        try:
            connected = await self.backend.ping()
        except Exception as e:
            self._degrade("ping", e)
            return False

        if connected and self.degraded:
            self.degraded = False
            self.logger.info("Cache backend %s reachable again", self.backend.name)
        return connected

    async def sweep(self) -> int:
        """Remove expired entries from the in-process store."""
        removed = await self.fallback.sweep()
        if removed:
            self.logger.debug("Swept %d expired cache entries", removed)
        return removed

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            await self.sweep()
            if self.degraded:
                await self.ping()

    def start(self) -> None:
        """Start the periodic sweep task."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._maintenance_loop())

    async def close(self) -> None:
        """Stop the sweep task and release the primary backend."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        try:
            await self.backend.close()
        except Exception as e:
            self.logger.warning("Cache backend close failed: %s", e)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dictionary with cache statistics
        """
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0

        return {
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "errors": self._errors,
            "total_requests": total,
            "hit_rate_percent": round(hit_rate, 2),
            "backend": self.backend.name,
            "connected": not self.degraded,
            "degraded": self.degraded,
            "fallback_entries": len(self.fallback),
            "default_ttl": self.default_ttl,
        }
