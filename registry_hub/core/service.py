"""Construction and lifecycle of the aggregation service.

``RegistryHub.from_config`` builds every shared component exactly once:
the rate limiter, the response cache, the store, the background
persister, the source clients and the aggregator.  Entry points call
``start()`` before serving and ``close()`` at shutdown.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import httpx

from registry_hub.core.aggregator import Aggregator
from registry_hub.core.cache import MemoryCacheBackend, RedisCacheBackend, ResponseCache
from registry_hub.core.config import SOURCE_NAMES, Config
from registry_hub.core.data_models import AggregatedResult
from registry_hub.core.filters import SearchFilters
from registry_hub.core.merge import RecordMerger
from registry_hub.core.persister import BackgroundPersister
from registry_hub.core.rate_limiter import InMemorySlidingWindow, RateLimiter, RedisSlidingWindow
from registry_hub.sources.base import USER_AGENT, BaseSourceClient, SourceConfig
from registry_hub.sources.bodacc import BodaccClient
from registry_hub.sources.local import LocalStoreSource
from registry_hub.sources.rne import RneClient
from registry_hub.sources.sirene import DEFAULT_TOKEN_URL, SireneClient
from registry_hub.storage.database import Database

logger = logging.getLogger(__name__)


def build_rate_limiter(config: Config) -> RateLimiter:
    """Rate limiter with the configured backend and per-source limits."""
    if config.get("rate_limit.backend", "memory") == "redis":
        backend = RedisSlidingWindow(config.get("rate_limit.redis_url"))
    else:
        backend = InMemorySlidingWindow()

    return RateLimiter(
        backend=backend,
        window_seconds=float(config.get("rate_limit.window_seconds", 60)),
        max_requests=int(config.get("rate_limit.max_requests", 100)),
        source_limits={name: config.rate_limit_for(name) for name in SOURCE_NAMES},
        purge_interval_seconds=float(config.get("rate_limit.purge_interval_seconds", 300)),
    )


def build_cache(config: Config) -> ResponseCache:
    """Response cache with the configured primary backend."""
    if config.get("cache.backend", "memory") == "redis":
        backend = RedisCacheBackend(config.get("cache.redis_url"))
        fallback: Optional[MemoryCacheBackend] = MemoryCacheBackend()
    else:
        backend = MemoryCacheBackend()
        fallback = None

    return ResponseCache(
        backend=backend,
        fallback=fallback,
        namespace=config.get("cache.namespace", "rh"),
        default_ttl=int(config.get("cache.default_ttl_seconds", 300)),
        compress_threshold=int(config.get("cache.compress_threshold_bytes", 16384)),
        sweep_interval_seconds=float(config.get("cache.sweep_interval_seconds", 60)),
        cache_partial=bool(config.get("cache.cache_partial", False)),
    )


def build_persister(config: Config, database: Database) -> BackgroundPersister:
    return BackgroundPersister(
        database,
        batch_size=int(config.get("persister.batch_size", 50)),
        queue_size=int(config.get("persister.queue_size", 1000)),
        workers=int(config.get("persister.workers", 2)),
        max_attempts=int(config.get("persister.max_attempts", 3)),
        retry_base_delay=float(config.get("persister.retry_base_delay_seconds", 0.5)),
        overflow_policy=config.get("persister.overflow_policy", "drop_oldest"),
    )


def source_config(config: Config, name: str) -> SourceConfig:
    """``SourceConfig`` of one source from the ``sources`` section."""
    section = config.get_source_config(name)
    return SourceConfig(
        name=name,
        base_url=section.get("base_url", ""),
        timeout=float(section.get("timeout_seconds", 5.0)),
        enabled=bool(section.get("enabled", True)),
        page_size=int(section.get("page_size", 20)),
        acquire_wait=float(config.get("rate_limit.acquire_wait_seconds", 0.5)),
    )


def build_sources(
    config: Config,
    database: Database,
    rate_limiter: RateLimiter,
    client: httpx.AsyncClient,
) -> Dict[str, BaseSourceClient]:
    """Instantiate every source client around one shared HTTP client."""
    sirene_config = source_config(config, "sirene")
    return {
        "local": LocalStoreSource(database, source_config(config, "local")),
        "sirene": SireneClient(
            sirene_config,
            rate_limiter,
            client,
            consumer_key=config.get_api_key("sirene_consumer_key"),
            consumer_secret=config.get_api_key("sirene_consumer_secret"),
            token_url=config.get_source_config("sirene").get("token_url", DEFAULT_TOKEN_URL),
        ),
        "rne": RneClient(
            source_config(config, "rne"),
            rate_limiter,
            client,
            token=config.get_api_key("rne_token"),
        ),
        "bodacc": BodaccClient(source_config(config, "bodacc"), rate_limiter, client),
    }


class RegistryHub:
    """The assembled service: aggregator plus its shared components."""

    def __init__(
        self,
        aggregator: Aggregator,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        database: Database,
        persister: BackgroundPersister,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.aggregator = aggregator
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.database = database
        self.persister = persister
        self.client = client
        self.logger = logging.getLogger(self.__class__.__name__)
        self._started = False

    @classmethod
    def from_config(
        cls, config: Config, client: Optional[httpx.AsyncClient] = None
    ) -> "RegistryHub":
        """Build the service from configuration.

        Args:
            config: Loaded configuration
            client: HTTP client shared by the sources (created if not provided)
        """
        config.validate_and_raise()

        db_path = config.get("database.path", "registry_hub.db")
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        database = Database(db_path)

        rate_limiter = build_rate_limiter(config)
        cache = build_cache(config)
        persister = build_persister(config, database)

        if client is None:
            client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                follow_redirects=True,
            )
        sources = build_sources(config, database, rate_limiter, client)

        priority = config.get("aggregator.source_priority", list(SOURCE_NAMES))
        aggregator = Aggregator(
            sources,
            cache,
            persister=persister,
            merger=RecordMerger(priority),
            deadline_seconds=float(config.get("aggregator.deadline_seconds", 12.0)),
            default_sources=config.get("aggregator.default_sources", list(SOURCE_NAMES)),
            min_query_length=int(config.get("aggregator.min_query_length", 3)),
        )
        return cls(aggregator, rate_limiter, cache, database, persister, client)

    def start(self) -> None:
        """Launch the background tasks; requires a running event loop."""
        if self._started:
            return
        self.rate_limiter.start()
        self.cache.start()
        self.persister.start()
        self._started = True
        self.logger.info(
            "Registry hub started with sources: %s", ", ".join(self.aggregator.sources)
        )

    async def close(self) -> None:
        """Drain the persister and release every resource."""
        await self.aggregator.close()
        await self.persister.stop(drain=True)
        await self.cache.close()
        await self.rate_limiter.stop()
        if self.client is not None:
            await self.client.aclose()
        self._started = False
        self.logger.info("Registry hub stopped")

    async def __aenter__(self) -> "RegistryHub":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def search(
        self,
        query: str,
        sources: Optional[Sequence[str]] = None,
        caller: str = "anonymous",
        limit: int = 20,
        filters: Optional[SearchFilters] = None,
    ) -> AggregatedResult:
        return await self.aggregator.search(
            query, sources=sources, caller=caller, limit=limit, filters=filters
        )

    async def enrich(
        self,
        registry_id: str,
        sources: Optional[Sequence[str]] = None,
        caller: str = "anonymous",
    ) -> AggregatedResult:
        return await self.aggregator.enrich(registry_id, sources=sources, caller=caller)

    async def clear_cache(self) -> int:
        return await self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()

    def get_stats(self) -> Dict[str, Any]:
        """Statistics of every component."""
        return {
            "aggregator": self.aggregator.get_stats(),
            "cache": self.cache.get_stats(),
            "rate_limit": self.rate_limiter.get_stats(),
            "persister": self.persister.get_stats(),
        }
