"""Logging configuration for registry_hub.

- Console and rotating file handlers, plain text or JSON lines
- Request context (``source``, ``registry_id``, ``caller``) carried into
  JSON output when passed through ``extra=``
- Aggregation latency records on the ``registry_hub.performance`` logger

The process entry points (API lifespan, CLI) call ``configure_logging``
once at startup.  Calling it again replaces the handlers it installed.
"""

import json
import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

PERFORMANCE_LOGGER = "registry_hub.performance"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attributes copied from ``extra=`` into JSON lines
CONTEXT_FIELDS = ("source", "registry_id", "caller", "cache_key")

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")

_HANDLER_MARK = "_registry_hub_handler"


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        entry.update(getattr(record, "extra_fields", None) or {})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class PerformanceLogger:
    """Latency records for aggregated requests.

    Each call to ``log_operation`` emits one INFO record whose fields
    (``operation``, ``duration_ms``, ``success`` and any metadata) end up
    as keys of the JSON line.  Running totals per operation are kept for
    ``summary()``.
    """

    def __init__(self, log_file: Optional[Path] = None):
        """Initialize the performance logger.

        Args:
            log_file: Dedicated JSON log file; without one, records go
                to the application handlers
        """
        self.logger = logging.getLogger(PERFORMANCE_LOGGER)
        self.logger.setLevel(logging.INFO)
        self._totals: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"count": 0, "failures": 0, "total_ms": 0.0, "max_ms": 0.0}
        )

        self.logger.propagate = log_file is None
        if log_file is not None:
            if not self.logger.handlers:
                self.logger.addHandler(
                    _file_handler(log_file, JSONFormatter(), 10 * 1024 * 1024, 5)
                )

    def log_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        totals = self._totals[operation]
        totals["count"] += 1
        totals["total_ms"] += duration_ms
        totals["max_ms"] = max(totals["max_ms"], duration_ms)
        if not success:
            totals["failures"] += 1

        fields = dict(metadata or {})
        fields.update(
            operation=operation,
            duration_ms=round(duration_ms, 2),
            success=success,
        )
        self.logger.info(
            "%s took %.2fms (%s)",
            operation,
            duration_ms,
            "ok" if success else "degraded",
            extra={"extra_fields": fields},
        )

    def summary(self) -> Dict[str, Dict[str, float]]:
        """Count, failures, mean and max latency per operation."""
        result = {}
        for operation, totals in self._totals.items():
            count = int(totals["count"])
            result[operation] = {
                "count": count,
                "failures": int(totals["failures"]),
                "mean_ms": round(totals["total_ms"] / count, 2) if count else 0.0,
                "max_ms": round(totals["max_ms"], 2),
            }
        return result


@contextmanager
def log_performance(operation: str, logger: Optional[logging.Logger] = None) -> Iterator[None]:
    """Log how long the ``with`` block took.

    Example:
        with log_performance("upsert batch"):
            database.upsert_companies(records)
    """
    target = logger or logging.getLogger(PERFORMANCE_LOGGER)
    started = time.perf_counter()
    try:
        yield
    except BaseException:
        elapsed = (time.perf_counter() - started) * 1000
        target.info("%s completed in %.2fms (success=False)", operation, elapsed)
        raise
    elapsed = (time.perf_counter() - started) * 1000
    target.info("%s completed in %.2fms (success=True)", operation, elapsed)


def _file_handler(
    log_file: Path, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    log_file: Optional[Path] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    use_json: bool = False,
    console_output: bool = True,
) -> None:
    """Install the root handlers.

    Parameters
    ----------
    log_file: Path, optional
        Rotating log file; its directory is created if needed.
    level: int
        Root logging level.
    max_bytes: int
        Size of a log file before rotation.
    backup_count: int
        Rotated files kept.
    use_json: bool
        JSON lines instead of plain text.
    console_output: bool
        Also log to stderr.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    formatter: logging.Formatter = (
        JSONFormatter() if use_json else logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)
    )

    handlers: List[logging.Handler] = []
    if console_output:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        handlers.append(console)
    if log_file is not None:
        handlers.append(_file_handler(log_file, formatter, max_bytes, backup_count))

    for handler in handlers:
        handler.setLevel(level)
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)
    root.setLevel(level)

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_config(config: Any, console_output: bool = True) -> None:
    """Configure logging from the ``logging`` section of a ``Config``."""
    level_name = str(config.get("logging.level", "INFO")).upper()
    log_file = config.get("logging.file", "")
    configure_logging(
        log_file=Path(log_file) if log_file else None,
        level=getattr(logging, level_name, logging.INFO),
        use_json=bool(config.get("logging.json", False)),
        console_output=console_output,
    )
