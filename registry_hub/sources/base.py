"""Shared machinery of the source clients.

Each client performs the outbound call(s) for one external source and
turns the payload into ``CompanyRecord`` objects.  ``fetch`` never raises
for upstream trouble: every failure comes back as a ``SourceResult`` whose
error is classified by the error taxonomy.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from registry_hub.core.data_models import CompanyRecord, SourceQuery, SourceResult, SourceStatus
from registry_hub.core.errors import (
    ErrorInfo,
    ErrorKind,
    RateLimitedError,
    UpstreamUnavailableError,
    log_level_for,
    to_source_error,
)
from registry_hub.core.rate_limiter import RateLimiter, make_key

logger = logging.getLogger(__name__)

USER_AGENT = "registry-hub/1.0"

# Errors raised by parsers on items whose fields have an unexpected type
UNEXPECTED_SHAPE = (AttributeError, KeyError, IndexError, TypeError, ValueError, ArithmeticError)


@dataclass
class SourceConfig:
    """Configuration for a source client."""

    name: str
    base_url: str = ""
    timeout: float = 5.0
    enabled: bool = True
    page_size: int = 20
    acquire_wait: float = 0.5


@dataclass
class ParseOutcome:
    """Records extracted from one payload, with the items that were lost."""

    records: List[CompanyRecord] = field(default_factory=list)
    dropped: int = 0
    malformed: int = 0
    incomplete: bool = False

    def add(self, record: Optional[CompanyRecord], malformed: bool = False) -> None:
        """Add a parsed item; ``None`` counts as dropped."""
        if record is None:
            self.dropped += 1
            return
        if malformed:
            self.malformed += 1
        self.records.append(record)

    def add_unreadable(self) -> None:
        """Count an item that could not be turned into a record at all."""
        self.malformed += 1


def decode_embedded(value: Any) -> Tuple[Any, bool]:
    """Decode a JSON document embedded in a string field.

    Returns:
        ``(decoded, malformed)``; ``decoded`` is ``None`` when the field is
        empty or could not be parsed
    """
    if value is None or value == "":
        return None, False
    if isinstance(value, (dict, list)):
        return value, False
    if not isinstance(value, str):
        return None, True
    try:
        return json.loads(value), False
    except ValueError:
        logger.debug("Malformed embedded JSON: %.80r", value)
        return None, True


def first_item(value: Any) -> Dict[str, Any]:
    """First mapping of ``value`` when it is a mapping or a list of them."""
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict):
                return item
    return {}


class BaseSourceClient(ABC):
    """Base class for source clients."""

    def __init__(
        self,
        config: SourceConfig,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize source client.

        Args:
            config: Source configuration
            rate_limiter: Shared outbound rate limiter
            client: HTTP client (created lazily if not provided)
        """
        self.config = config
        self.rate_limiter = rate_limiter
        self._client = client
        self._owns_client = client is None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """GET ``path`` and decode the JSON body.

        Raises:
            httpx.HTTPStatusError: On a 4xx/5xx answer
            UpstreamUnavailableError: If the body is not JSON
        """
        url = f"{self.config.base_url}{path}"
        client = await self._get_client()

        self.logger.debug("API request: GET %s %s", url, params or "")
        response = await client.get(url, params=params, headers=headers)
        self.logger.debug("API response: GET %s -> %d", url, response.status_code)

        response.raise_for_status()
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailableError(
                f"{self.name} returned a non-JSON body", source=self.name
            ) from e

    async def fetch(self, query: SourceQuery, timeout: Optional[float] = None) -> SourceResult:
        """Run one call against the source.

        Acquires a rate limit permit first; when none is available within
        ``acquire_wait`` the call fails as rate limited without reaching
        the network.

        Args:
            query: What to look for
            timeout: Overrides the configured timeout

        Returns:
            SourceResult; never raises except on cancellation
        """
        started = time.perf_counter()

        def elapsed() -> float:
            return (time.perf_counter() - started) * 1000

        if self.rate_limiter is not None:
            key = make_key(self.name, query.caller)
            if not await self.rate_limiter.acquire(key, self.config.acquire_wait):
                error = RateLimitedError("local rate limit reached", source=self.name)
                return SourceResult.failed(self.name, error.to_info(), elapsed())

        try:
            outcome = await asyncio.wait_for(
                self._fetch(query), timeout=timeout or self.config.timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = to_source_error(exc, self.name)
            self.logger.log(
                log_level_for(error.kind),
                "%s failed for %r: %s (%s)",
                self.name,
                query.describe(),
                error.message,
                error.kind.value,
                extra={"source": self.name, "caller": query.caller},
            )
            if error.kind is ErrorKind.NOT_FOUND:
                return SourceResult(
                    source=self.name,
                    status=SourceStatus.OK,
                    error=ErrorInfo(ErrorKind.NOT_FOUND, error.message, error.status_code),
                    latency_ms=elapsed(),
                )
            return SourceResult.failed(self.name, error.to_info(), elapsed())

        if outcome.dropped:
            self.logger.debug(
                "%s: dropped %d items without a registry identifier", self.name, outcome.dropped
            )
        if outcome.malformed:
            self.logger.warning(
                "%s: %d items were malformed or unreadable",
                self.name,
                outcome.malformed,
                extra={"source": self.name},
            )

        partial = outcome.malformed > 0 or outcome.incomplete
        return SourceResult(
            source=self.name,
            status=SourceStatus.PARTIAL if partial else SourceStatus.OK,
            records=outcome.records,
            latency_ms=elapsed(),
            dropped=outcome.dropped,
            malformed=outcome.malformed,
        )

    @abstractmethod
    async def _fetch(self, query: SourceQuery) -> ParseOutcome:
        """Perform the outbound call(s) and parse the payload."""

    def _collect(
        self,
        outcome: ParseOutcome,
        build: Callable[[], Tuple[Optional[CompanyRecord], bool]],
        reference: Any = None,
    ) -> None:
        """Add the item ``build`` parses to ``outcome``.

        An item whose fields have an unexpected type is counted as
        malformed and skipped, so the other items of the payload survive.
        """
        try:
            record, malformed = build()
        except UNEXPECTED_SHAPE as exc:
            self.logger.warning(
                "%s: skipping unreadable item %s: %s: %s",
                self.name,
                reference,
                type(exc).__name__,
                exc,
                extra={"source": self.name},
            )
            outcome.add_unreadable()
            return
        outcome.add(record, malformed)
