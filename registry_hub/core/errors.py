"""Error taxonomy shared by the source clients, cache, aggregator and persister.

Every failure that crosses a component boundary is expressed as one of a
closed set of kinds.  Behaviour that depends on the kind (retry or not,
how long to back off, which log level to use) is decided here and nowhere
else, so callers match on ``ErrorKind`` instead of inspecting exception
messages.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Closed set of error kinds."""

    VALIDATION = "validation"  # Bad input, never retried
    NOT_FOUND = "not_found"  # No data; rendered as empty
    RATE_LIMITED = "rate_limited"  # Retry after backoff
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"  # Retry with backoff
    TIMEOUT = "timeout"  # Retry, bounded attempts
    INTERNAL = "internal"  # Local bug, always logged


class SourceError(Exception):
    """Base class for classified errors.

    Attributes
    ----------
    kind: ErrorKind
        Classification used for retry and reporting decisions.
    source: Optional[str]
        Name of the component or upstream source that failed.
    status_code: Optional[int]
        HTTP status code when the error came from an HTTP response.
    retry_after: Optional[float]
        Seconds the upstream asked us to wait, when known.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.source = source
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)

    def to_info(self) -> "ErrorInfo":
        return ErrorInfo(kind=self.kind, message=self.message, status_code=self.status_code)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind.value!r}, source={self.source!r}, message={self.message!r})"


class ValidationError(SourceError):
    kind = ErrorKind.VALIDATION


class NotFoundError(SourceError):
    kind = ErrorKind.NOT_FOUND


class RateLimitedError(SourceError):
    kind = ErrorKind.RATE_LIMITED


class UpstreamUnavailableError(SourceError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class SourceTimeoutError(SourceError):
    kind = ErrorKind.TIMEOUT


class InternalError(SourceError):
    kind = ErrorKind.INTERNAL


_ERROR_CLASSES: Dict[ErrorKind, type] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailableError,
    ErrorKind.TIMEOUT: SourceTimeoutError,
    ErrorKind.INTERNAL: InternalError,
}


@dataclass(frozen=True)
class ErrorInfo:
    """Serializable description of an error, kept in diagnostics."""

    kind: ErrorKind
    message: str
    status_code: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "status_code": self.status_code,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorInfo":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            status_code=data.get("status_code"),
        )


def error_for_kind(kind: ErrorKind, message: str, **kwargs: Any) -> SourceError:
    """Build the exception subclass matching ``kind``."""
    return _ERROR_CLASSES[kind](message, **kwargs)


def classify_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an error kind.

    Args:
        status_code: HTTP status code (expected to be >= 400)

    Returns:
        ErrorKind for the status
    """
    if status_code in (400, 422):
        return ErrorKind.VALIDATION
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    # 401/403 and 5xx
    return ErrorKind.UPSTREAM_UNAVAILABLE


def classify_exception(exc: BaseException) -> ErrorKind:
    """Classify an arbitrary exception raised while talking to a source."""
    if isinstance(exc, SourceError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, httpx.TransportError):
        # Connection refused, DNS failure, reset
        return ErrorKind.TIMEOUT
    return ErrorKind.INTERNAL


def to_source_error(exc: BaseException, source: Optional[str] = None) -> SourceError:
    """Convert any exception into a classified ``SourceError``."""
    if isinstance(exc, SourceError):
        if exc.source is None:
            exc.source = source
        return exc

    kind = classify_exception(exc)
    status_code = None
    retry_after = None
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        retry_after = parse_retry_after(exc.response.headers.get("Retry-After"))

    message = str(exc) or type(exc).__name__
    if kind is ErrorKind.INTERNAL:
        logger.error("Internal error in %s: %s", source or "unknown", message, exc_info=exc)

    return error_for_kind(
        kind,
        message,
        source=source,
        status_code=status_code,
        retry_after=retry_after,
    )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a ``Retry-After`` header given in seconds."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def is_retryable(kind: ErrorKind) -> bool:
    """Whether an operation that failed with ``kind`` may be retried."""
    if kind is ErrorKind.VALIDATION:
        return False
    if kind is ErrorKind.NOT_FOUND:
        return False
    if kind is ErrorKind.RATE_LIMITED:
        return True
    if kind is ErrorKind.UPSTREAM_UNAVAILABLE:
        return True
    if kind is ErrorKind.TIMEOUT:
        return True
    if kind is ErrorKind.INTERNAL:
        return False
    raise AssertionError(f"Unhandled error kind: {kind!r}")


def retry_delay(
    kind: ErrorKind,
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    retry_after: Optional[float] = None,
) -> float:
    """Backoff before retry number ``attempt`` (1-based).

    Rate-limited calls honour the upstream ``Retry-After`` when given and
    back off twice as steeply otherwise.
    """
    if not is_retryable(kind):
        return 0.0

    if kind is ErrorKind.RATE_LIMITED:
        if retry_after is not None:
            return min(retry_after, max_delay)
        delay = base_delay * (4 ** (attempt - 1))
    elif kind is ErrorKind.UPSTREAM_UNAVAILABLE:
        delay = base_delay * (2 ** (attempt - 1))
    elif kind is ErrorKind.TIMEOUT:
        delay = base_delay * attempt
    else:
        raise AssertionError(f"Unhandled retryable kind: {kind!r}")

    return min(delay, max_delay)


def log_level_for(kind: ErrorKind) -> int:
    """Log level used when reporting an error of ``kind``."""
    if kind is ErrorKind.NOT_FOUND:
        return logging.DEBUG
    if kind is ErrorKind.VALIDATION:
        return logging.INFO
    if kind in (ErrorKind.RATE_LIMITED, ErrorKind.UPSTREAM_UNAVAILABLE, ErrorKind.TIMEOUT):
        return logging.WARNING
    return logging.ERROR
