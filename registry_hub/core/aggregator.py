"""Fan-out of one query to several sources and merge of their answers.

``Aggregator.search`` and ``Aggregator.enrich`` never raise for upstream
trouble: every source outcome, including timeouts and crashes, ends up in
the per-source diagnostics of the returned ``AggregatedResult``.  Only
invalid input raises (``ValidationError``).

Cancellation policy:

- When the request deadline expires, sources that already answered are
  merged and the pending ones are reported as failed with a timeout.
- When the calling task is cancelled, every in-flight source call is
  cancelled and ``asyncio.CancelledError`` propagates; nothing is cached
  or persisted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from registry_hub.core.cache import ResponseCache
from registry_hub.core.data_models import (
    AggregatedResult,
    CompanyRecord,
    QueryMode,
    SourceQuery,
    SourceResult,
    normalize_registry_id,
    registry_id_from_establishment,
)
from registry_hub.core.errors import (
    ErrorInfo,
    ErrorKind,
    ValidationError,
    to_source_error,
)
from registry_hub.core.filters import SearchFilters
from registry_hub.core.logging_setup import PerformanceLogger
from registry_hub.core.merge import RecordMerger
from registry_hub.core.persister import BackgroundPersister
from registry_hub.sources.base import BaseSourceClient

logger = logging.getLogger(__name__)

LOCAL_SOURCE = "local"


@dataclass
class _Flight:
    """One in-progress computation shared by identical requests."""

    task: asyncio.Task
    waiters: int = 0


class Aggregator:
    """Coordinates parallel source calls for searches and detail lookups."""

    def __init__(
        self,
        sources: Mapping[str, BaseSourceClient],
        cache: ResponseCache,
        persister: Optional[BackgroundPersister] = None,
        merger: Optional[RecordMerger] = None,
        deadline_seconds: float = 12.0,
        default_sources: Optional[Sequence[str]] = None,
        min_query_length: int = 3,
        cache_ttl: Optional[int] = None,
        performance_logger: Optional[PerformanceLogger] = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            sources: Source clients by name
            cache: Shared response cache
            persister: Background writer for newly seen records
            merger: Record merger (default source priority if not provided)
            deadline_seconds: Upper bound on the wait for all sources
            default_sources: Sources queried when the caller names none
            min_query_length: Shortest accepted free-text query
            cache_ttl: TTL of cached results (cache default if not provided)
            performance_logger: Destination of per-request latency records
        """
        self.sources = dict(sources)
        self.cache = cache
        self.persister = persister
        self.merger = merger or RecordMerger()
        self.deadline_seconds = deadline_seconds
        self.default_sources = list(default_sources or self.sources.keys())
        self.min_query_length = min_query_length
        self.cache_ttl = cache_ttl
        self.performance = performance_logger or PerformanceLogger()
        self.logger = logging.getLogger(self.__class__.__name__)

        self._inflight: Dict[str, _Flight] = {}
        self._stats = {
            "requests": 0,
            "cache_hits": 0,
            "shared": 0,
            "computed": 0,
            "source_calls": 0,
            "source_failures": 0,
        }

    # ------------------------------------------------------------------
    # Input validation

    def parse_query(self, query: str) -> SourceQuery:
        """Turn raw user input into a search query.

        A 9-digit input (spaces allowed) is a registry identifier; a
        14-digit input is an establishment identifier, resolved to its
        registry identifier.

        Raises:
            ValidationError: If the input is empty or too short
        """
        text = " ".join((query or "").split())
        if not text:
            raise ValidationError("query must not be empty")

        registry_id = normalize_registry_id(text) or registry_id_from_establishment(text)
        if registry_id:
            return SourceQuery(registry_id=registry_id, mode=QueryMode.SEARCH)

        if len(text) < self.min_query_length:
            raise ValidationError(
                f"query must be at least {self.min_query_length} characters long"
            )
        return SourceQuery(text=text, mode=QueryMode.SEARCH)

    def select_sources(self, sources: Optional[Sequence[str]] = None) -> List[str]:
        """Validate source names and return them in merge priority order.

        Raises:
            ValidationError: On unknown names or an empty selection
        """
        if sources is None:
            names = [name for name in self.default_sources if name in self.sources]
        else:
            names = []
            for raw in sources:
                name = str(raw).strip().lower()
                if not name:
                    continue
                if name not in self.sources:
                    raise ValidationError(
                        f"unknown source '{name}', expected one of: {', '.join(sorted(self.sources))}"
                    )
                names.append(name)

        names = [name for name in dict.fromkeys(names) if self.sources[name].is_enabled]
        if not names:
            raise ValidationError("no enabled source selected")
        return self.merger.order(names)

    # ------------------------------------------------------------------
    # Public operations

    async def search(
        self,
        query: str,
        sources: Optional[Sequence[str]] = None,
        caller: str = "anonymous",
        limit: int = 20,
        filters: Optional[SearchFilters] = None,
    ) -> AggregatedResult:
        """Search every selected source for ``query``.

        Args:
            query: Free text or a registry/establishment identifier
            sources: Source names (configured defaults if not provided)
            caller: Identity used for per-caller rate limiting
            limit: Maximum records per source
            filters: Narrowing, ordering and paging of the merged records

        Returns:
            Merged result with per-source diagnostics

        Raises:
            ValidationError: On invalid input
        """
        parsed = self.parse_query(query)
        names = self.select_sources(sources)
        source_query = SourceQuery(
            text=parsed.text,
            registry_id=parsed.registry_id,
            mode=QueryMode.SEARCH,
            caller=caller,
            limit=max(1, limit),
        )
        key = self.cache.make_key(
            "search",
            q=parsed.registry_id or parsed.text,
            sources=names,
            limit=source_query.limit,
            **(filters.cache_params() if filters else {}),
        )
        return await self._run(key, source_query, names, filters)

    async def enrich(
        self,
        registry_id: str,
        sources: Optional[Sequence[str]] = None,
        caller: str = "anonymous",
    ) -> AggregatedResult:
        """Detail lookup of one company.

        Establishments come from the national register, announcements from
        the bulletin and documents from the companies registry.

        Raises:
            ValidationError: If ``registry_id`` is not a 9 or 14-digit identifier
        """
        normalized = normalize_registry_id(registry_id) or registry_id_from_establishment(
            registry_id
        )
        if normalized is None:
            raise ValidationError(f"invalid registry identifier: {registry_id!r}")

        names = self.select_sources(sources)
        source_query = SourceQuery(registry_id=normalized, mode=QueryMode.DETAIL, caller=caller)
        key = self.cache.make_key(f"detail:{normalized}", sources=names)
        return await self._run(key, source_query, names)

    async def invalidate(self, registry_id: str) -> int:
        """Drop cached detail results of one company."""
        normalized = normalize_registry_id(registry_id)
        if normalized is None:
            raise ValidationError(f"invalid registry identifier: {registry_id!r}")
        return await self.cache.invalidate_pattern(f"{self.cache.namespace}:detail:{normalized}:")

    async def invalidate_search(self) -> int:
        """Drop every cached search result."""
        return await self.cache.invalidate_pattern(f"{self.cache.namespace}:search:")

    # ------------------------------------------------------------------
    # Pipeline

    async def _run(
        self,
        key: str,
        query: SourceQuery,
        names: List[str],
        filters: Optional[SearchFilters] = None,
    ) -> AggregatedResult:
        self._stats["requests"] += 1

        cached = await self._cached(key)
        if cached is not None:
            self._stats["cache_hits"] += 1
            self.logger.debug("Serving %r from cache", query.describe())
            return cached

        flight = self._inflight.get(key)
        if flight is None:
            task = asyncio.create_task(self._compute(key, query, names, filters))
            flight = _Flight(task=task)
            self._inflight[key] = flight
            task.add_done_callback(lambda _task, key=key: self._inflight.pop(key, None))
        else:
            self._stats["shared"] += 1
            self.logger.debug("Joining in-flight request for %r", query.describe())

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                # Last interested caller went away
                flight.task.cancel()

    async def _cached(self, key: str) -> Optional[AggregatedResult]:
        value, found = await self.cache.get(key)
        if not found:
            return None
        try:
            return AggregatedResult.from_dict(value).as_cached()
        except (KeyError, TypeError, ValueError) as e:
            self.logger.warning(
                "Ignoring unreadable cached result %s: %s", key, e, extra={"cache_key": key}
            )
            return None

    async def _compute(
        self,
        key: str,
        query: SourceQuery,
        names: List[str],
        filters: Optional[SearchFilters] = None,
    ) -> AggregatedResult:
        self._stats["computed"] += 1
        started = time.perf_counter()

        results = await self._gather(query, names)
        records = self.merger.merge(results)
        if query.mode is QueryMode.DETAIL:
            records = [r for r in records if r.registry_id == query.registry_id]

        diagnostics = {}
        by_name = {result.source: result for result in results}
        for name in self.merger.order(by_name):
            diagnostics[name] = by_name[name].diagnostic()

        shown, matched, page = records, None, None
        if filters is not None and not filters.is_default:
            shown, matched = filters.apply(records)
            page = filters.page

        result = AggregatedResult(
            query=query.describe(),
            records=tuple(shown),
            diagnostics=diagnostics,
            mode=query.mode,
            matched=matched,
            page=page,
        )

        failed = result.failed_sources
        self._stats["source_failures"] += len(failed)
        duration_ms = (time.perf_counter() - started) * 1000
        self.performance.log_operation(
            f"aggregate_{query.mode.value}",
            duration_ms,
            success=len(failed) < len(names),
            metadata={
                "query": query.describe(),
                "sources": names,
                "failed_sources": failed,
                "records": result.total,
            },
        )
        if failed:
            self.logger.info(
                "%s %r: %d records, failed sources: %s",
                query.mode.value,
                query.describe(),
                result.total,
                ", ".join(failed),
            )

        if self.cache.is_cacheable(result):
            await self.cache.set(key, result.to_dict(), ttl=self.cache_ttl)

        self._persist(query, results, records)
        return result

    async def _gather(self, query: SourceQuery, names: List[str]) -> List[SourceResult]:
        """Call every source concurrently under the global deadline."""
        tasks = {
            name: asyncio.create_task(self._call(name, query), name=f"source:{name}")
            for name in names
        }
        self._stats["source_calls"] += len(tasks)

        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self.deadline_seconds)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for name, task in tasks.items():
            if task in pending or task.cancelled():
                self.logger.warning(
                    "%s gave no answer within the %.1fs deadline", name, self.deadline_seconds
                )
                results.append(
                    SourceResult.failed(
                        name,
                        ErrorInfo(
                            ErrorKind.TIMEOUT,
                            f"no answer within {self.deadline_seconds:g}s",
                        ),
                        latency_ms=self.deadline_seconds * 1000,
                    )
                )
            else:
                results.append(task.result())
        return results

    async def _call(self, name: str, query: SourceQuery) -> SourceResult:
        """Run one source call, converting any crash into a failed result."""
        started = time.perf_counter()
        try:
            return await self.sources[name].fetch(query)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = to_source_error(exc, name)
            return SourceResult.failed(
                name, error.to_info(), latency_ms=(time.perf_counter() - started) * 1000
            )

    def _persist(
        self, query: SourceQuery, results: List[SourceResult], records: List[CompanyRecord]
    ) -> None:
        """Hand records the local store does not know yet to the persister.

        In detail mode, records enriched by a remote source are written too.
        """
        if self.persister is None or not records:
            return

        known = set()
        for result in results:
            if result.source == LOCAL_SOURCE:
                known.update(record.registry_id for record in result.records)

        to_write = []
        for record in records:
            remote = any(
                fields for source, fields in record.source_breakdown.items() if source != LOCAL_SOURCE
            )
            if record.registry_id not in known:
                to_write.append(record.copy())
            elif query.mode is QueryMode.DETAIL and remote:
                to_write.append(record.copy())

        if to_write:
            accepted = self.persister.enqueue(to_write)
            self.logger.debug("Queued %d/%d records for persistence", accepted, len(to_write))

    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._stats)
        stats["inflight"] = len(self._inflight)
        stats["latency"] = self.performance.summary()
        return stats

    async def close(self) -> None:
        """Cancel in-flight computations and close the source clients."""
        tasks = [flight.task for flight in self._inflight.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for source in self.sources.values():
            await source.close()
