"""Core functionality for the registry hub.

This package contains the shared components: error taxonomy, data models,
configuration, logging, rate limiting, response caching, record merging,
background persistence and the aggregator that ties them together.

The aggregator, persister and service modules depend on the sources and
storage packages and are imported from their own modules.
"""

from .errors import ErrorKind, SourceError, ValidationError  # noqa: F401
from .data_models import (  # noqa: F401
    AggregatedResult,
    CompanyRecord,
    SourceQuery,
    SourceResult,
    SourceStatus,
)
from .config import Config, ValidationResult  # noqa: F401
from .logging_setup import configure_logging  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401
from .cache import ResponseCache  # noqa: F401
from .merge import RecordMerger  # noqa: F401
from .filters import SearchFilters  # noqa: F401

__all__ = [
    # Errors
    "ErrorKind",
    "SourceError",
    "ValidationError",
    # Data models
    "AggregatedResult",
    "CompanyRecord",
    "SourceQuery",
    "SourceResult",
    "SourceStatus",
    # Config
    "Config",
    "ValidationResult",
    "configure_logging",
    # Components
    "RateLimiter",
    "ResponseCache",
    "RecordMerger",
    "SearchFilters",
]
