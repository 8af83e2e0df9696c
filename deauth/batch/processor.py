"""
Transactional batch processor.

Pulls work from a provider, groups it into batches and runs every batch in its
own transaction through the RetryingTransactionExecutor. With one worker the
batches run strictly in the order supplied; with more workers that many
consumer tasks drain a shared batch queue.

A batch that still fails after the executor's retries is re-processed one
entry per transaction, so one bad entry does not take the rest of its batch
down with it. Entries failing on their own are recorded and skipped.
"""

import asyncio
import time
from collections.abc import Sequence
from typing import Generic, Protocol, TypeVar

from deauth.db.transactions import RetryingTransactionExecutor, Transaction
from deauth.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class BatchWorkProvider(Protocol[T]):
    async def get_total_estimated_work_size(self) -> int: ...

    async def get_next_work(self) -> Sequence[T]: ...


class BatchProcessWorker(Protocol[T]):
    def get_identifier(self, entry: T) -> str: ...

    async def before_process(self) -> None: ...

    async def process(self, entry: T, txn: Transaction) -> None: ...

    async def after_process(self, txn: Transaction) -> None: ...


class BatchProcessWorkerAdaptor(Generic[T]):
    """Worker base with no-op lifecycle hooks."""

    def get_identifier(self, entry: T) -> str:
        return str(entry)

    async def before_process(self) -> None:
        return None

    async def process(self, entry: T, txn: Transaction) -> None:
        raise NotImplementedError

    async def after_process(self, txn: Transaction) -> None:
        return None


class CollectionWorkProvider(Generic[T]):
    """Hands out a fixed collection in chunks of chunk_size (all at once when None)."""

    def __init__(self, entries: Sequence[T], chunk_size: int | None = None):
        self._entries = list(entries)
        self._chunk_size = chunk_size
        self._position = 0

    async def get_total_estimated_work_size(self) -> int:
        return len(self._entries)

    async def get_next_work(self) -> Sequence[T]:
        if self._position >= len(self._entries):
            return []
        end = len(self._entries) if self._chunk_size is None else self._position + self._chunk_size
        chunk = self._entries[self._position : end]
        self._position += len(chunk)
        return chunk


class BatchProcessor(Generic[T]):
    """
    Drives a worker over all work of a provider in transactional batches.

    Args:
        process_name: Name used in progress logging
        executor: Retrying transactional executor used for every batch
        work_provider: Source of the work
        worker_threads: Number of concurrent batch consumers
        batch_size: Entries per transaction
        logging_interval: Log progress every this many entries
        read_only: Open batch transactions READ ONLY
    """

    def __init__(
        self,
        process_name: str,
        executor: RetryingTransactionExecutor,
        work_provider: BatchWorkProvider[T],
        worker_threads: int,
        batch_size: int,
        logging_interval: int = 100,
        read_only: bool = False,
    ):
        if worker_threads <= 0:
            raise ValueError("worker_threads must be a positive integer")
        if batch_size <= 0:
            raise ValueError("batch_size must be a positive integer")
        if logging_interval <= 0:
            raise ValueError("logging_interval must be a positive integer")

        self.process_name = process_name
        self._executor = executor
        self._work_provider = work_provider
        self.worker_threads = worker_threads
        self.batch_size = batch_size
        self.logging_interval = logging_interval
        self.read_only = read_only

        self.total_results = 0
        self.successfully_processed_entries = 0
        self.total_errors = 0
        self.last_error: Exception | None = None
        self.last_error_entry_id: str | None = None
        self._estimated_work_size = 0
        self._start_time: float | None = None
        self._end_time: float | None = None

    @property
    def duration_ms(self) -> float | None:
        if self._start_time is None or self._end_time is None:
            return None
        return round((self._end_time - self._start_time) * 1000, 2)

    async def process(self, worker: BatchProcessWorker[T]) -> int:
        """Process all work; returns the number of entries that failed."""
        self._start_time = time.monotonic()
        self._estimated_work_size = await self._work_provider.get_total_estimated_work_size()

        logger.info(
            "Batch process started",
            process=self.process_name,
            estimated_entries=self._estimated_work_size,
            worker_threads=self.worker_threads,
            batch_size=self.batch_size,
        )

        while True:
            work = await self._work_provider.get_next_work()
            if not work:
                break

            batches = [
                list(work[i : i + self.batch_size]) for i in range(0, len(work), self.batch_size)
            ]

            if self.worker_threads == 1:
                for batch in batches:
                    await self._run_batch(worker, batch)
            else:
                queue: asyncio.Queue[list[T]] = asyncio.Queue()
                for batch in batches:
                    queue.put_nowait(batch)
                consumers = min(self.worker_threads, len(batches))
                await asyncio.gather(*(self._consume(worker, queue) for _ in range(consumers)))

        self._end_time = time.monotonic()

        logger.info(
            "Batch process completed",
            process=self.process_name,
            processed=self.total_results,
            succeeded=self.successfully_processed_entries,
            errors=self.total_errors,
            last_error=str(self.last_error) if self.last_error else None,
            last_error_entry_id=self.last_error_entry_id,
            duration_ms=self.duration_ms,
        )
        return self.total_errors

    async def _consume(self, worker: BatchProcessWorker[T], queue: "asyncio.Queue[list[T]]") -> None:
        while True:
            try:
                batch = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._run_batch(worker, batch)

    async def _run_batch(self, worker: BatchProcessWorker[T], batch: list[T]) -> None:
        # Not tied to transaction attempts - a retried attempt does not call it again
        await worker.before_process()

        async def work(txn: Transaction) -> None:
            for entry in batch:
                await worker.process(entry, txn)
            await worker.after_process(txn)

        try:
            await self._executor.run_in_transaction(work, read_only=self.read_only, requires_new=True)
        except Exception as e:
            if len(batch) > 1:
                logger.warning(
                    "Batch failed, re-processing entries individually",
                    process=self.process_name,
                    batch_size=len(batch),
                    first_entry_id=worker.get_identifier(batch[0]),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                for entry in batch:
                    await self._run_batch(worker, [entry])
                return

            self._record_failure(worker, batch[0], e)
            return

        self._record_success(len(batch))

    def _record_success(self, count: int) -> None:
        self.successfully_processed_entries += count
        self._advance(count)

    def _record_failure(self, worker: BatchProcessWorker[T], entry: T, error: Exception) -> None:
        entry_id = worker.get_identifier(entry)
        self.total_errors += 1
        self.last_error = error
        self.last_error_entry_id = entry_id

        logger.error(
            "Failed to process entry",
            process=self.process_name,
            entry_id=entry_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        self._advance(1)

    def _advance(self, count: int) -> None:
        before = self.total_results
        self.total_results += count
        if before // self.logging_interval != self.total_results // self.logging_interval:
            logger.info(
                "Batch process progress",
                process=self.process_name,
                processed=self.total_results,
                estimated_entries=self._estimated_work_size,
                errors=self.total_errors,
            )
