"""Background persistence of newly seen companies.

``enqueue`` returns immediately; a bounded pool of workers drains a
bounded queue of batches and upserts them into the store.  A batch that
fails is retried record by record so one bad record does not lose the
others.  A record that keeps failing is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from registry_hub.core.data_models import CompanyRecord
from registry_hub.core.errors import ErrorKind, classify_exception, is_retryable, retry_delay
from registry_hub.core.logging_setup import log_performance
from registry_hub.storage.database import Database

logger = logging.getLogger(__name__)

OVERFLOW_POLICIES = ("drop_oldest", "reject_new")


@dataclass
class PersistenceJob:
    """A batch of records waiting to be written."""

    records: List[CompanyRecord]
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = 0


def is_transient(exc: BaseException) -> bool:
    """Whether a write failure is worth retrying."""
    if isinstance(exc, sqlite3.OperationalError):
        # Locked or busy database, disk I/O hiccups
        return True
    return is_retryable(classify_exception(exc))


class BackgroundPersister:
    """Bounded worker pool writing records to the store.

    Created at process start; ``start()`` spawns the workers and
    ``stop()`` drains the queue (bounded by a timeout) before cancelling
    them.
    """

    def __init__(
        self,
        database: Database,
        batch_size: int = 50,
        queue_size: int = 1000,
        workers: int = 2,
        max_attempts: int = 3,
        retry_base_delay: float = 0.5,
        overflow_policy: str = "drop_oldest",
    ) -> None:
        """Initialize the persister.

        Args:
            database: Store to write to
            batch_size: Maximum records per job
            queue_size: Maximum number of queued jobs
            workers: Number of concurrent writers
            max_attempts: Write attempts per record before it is dropped
            retry_base_delay: Base of the backoff between attempts
            overflow_policy: ``drop_oldest`` or ``reject_new`` when the queue is full
        """
        if overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(f"Unknown overflow policy: {overflow_policy}")
        if batch_size < 1 or workers < 1 or max_attempts < 1:
            raise ValueError("batch_size, workers and max_attempts must be positive")

        self.database = database
        self.batch_size = batch_size
        self.workers = workers
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.overflow_policy = overflow_policy
        self.logger = logging.getLogger(self.__class__.__name__)

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._tasks: List[asyncio.Task] = []
        self._stats: Dict[str, int] = {
            "enqueued": 0,
            "written": 0,
            "batches": 0,
            "retried": 0,
            "failed": 0,
            "overflow_dropped": 0,
            "rejected": 0,
        }

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, records: Sequence[CompanyRecord]) -> int:
        """Queue records for writing without waiting.

        Args:
            records: Records to persist

        Returns:
            Number of records accepted
        """
        accepted = 0
        for start in range(0, len(records), self.batch_size):
            job = PersistenceJob(records=list(records[start:start + self.batch_size]))
            if self._offer(job):
                accepted += len(job.records)
        self._stats["enqueued"] += accepted
        return accepted

    def _offer(self, job: PersistenceJob) -> bool:
        try:
            self._queue.put_nowait(job)
            return True
        except asyncio.QueueFull:
            pass

        if self.overflow_policy == "reject_new":
            self._stats["rejected"] += len(job.records)
            self.logger.warning(
                "Persistence queue full, rejected batch of %d records", len(job.records)
            )
            return False

        try:
            oldest = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        else:
            self._queue.task_done()
            self._stats["overflow_dropped"] += len(oldest.records)
            self.logger.warning(
                "Persistence queue full, dropped oldest batch of %d records (queued at %s)",
                len(oldest.records),
                oldest.enqueued_at.isoformat(),
            )
        self._queue.put_nowait(job)
        return True

    async def _worker(self, index: int) -> None:
        self.logger.debug("Persistence worker %d started", index)
        while True:
            job = await self._queue.get()
            try:
                await self._process(job)
            except Exception:
                self.logger.exception("Unexpected error while persisting a batch")
            finally:
                self._queue.task_done()

    async def _process(self, job: PersistenceJob) -> None:
        job.attempt += 1
        try:
            with log_performance(f"upsert batch of {len(job.records)}", self.logger):
                written = await asyncio.to_thread(self.database.upsert_companies, job.records)
        except Exception as e:
            self.logger.warning(
                "Batch of %d records failed (%s), retrying record by record",
                len(job.records),
                e,
            )
            for record in job.records:
                await self._write_record(PersistenceJob(records=[record], attempt=job.attempt))
            return

        self._stats["batches"] += 1
        self._stats["written"] += written

    async def _write_record(self, job: PersistenceJob) -> bool:
        record = job.records[0]
        while True:
            try:
                await asyncio.to_thread(self.database.upsert_company, record)
            except Exception as e:
                transient = is_transient(e)
                if not transient or job.attempt >= self.max_attempts:
                    self._stats["failed"] += 1
                    self.logger.error(
                        "Dropping record %s after %d attempts: %s",
                        record.registry_id,
                        job.attempt,
                        e,
                    )
                    return False

                delay = retry_delay(
                    ErrorKind.UPSTREAM_UNAVAILABLE, job.attempt, base_delay=self.retry_base_delay
                )
                job.attempt += 1
                self._stats["retried"] += 1
                self.logger.debug(
                    "Retrying record %s in %.2fs (attempt %d/%d)",
                    record.registry_id,
                    delay,
                    job.attempt,
                    self.max_attempts,
                )
                await asyncio.sleep(delay)
                continue

            self._stats["written"] += 1
            return True

    def start(self) -> None:
        """Spawn the worker tasks."""
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        self.logger.info("Started %d persistence workers", self.workers)

    async def flush(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self, drain: bool = True, timeout: Optional[float] = 10.0) -> None:
        """Stop the workers.

        Args:
            drain: Process queued jobs first
            timeout: Upper bound on the drain
        """
        if drain and self.running:
            try:
                await asyncio.wait_for(self.flush(), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.warning(
                    "Persistence drain timed out with %d batches pending", self.pending
                )

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def get_stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["pending"] = self.pending
        stats["workers"] = len(self._tasks)
        return stats
