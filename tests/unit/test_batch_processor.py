import asyncio
from unittest.mock import patch

import pytest

from deauth.batch.processor import (
    BatchProcessor,
    BatchProcessWorkerAdaptor,
    CollectionWorkProvider,
)
from deauth.db.transactions import TransientCollaboratorFailure


class RecordingWorker(BatchProcessWorkerAdaptor[str]):
    def __init__(self, fail_on=(), transient_once=()):
        self.fail_on = set(fail_on)
        self.transient_once = set(transient_once)
        self.processed: list[str] = []
        self.committed: list[str] = []
        self.before_calls = 0
        self.batches: list[list[str]] = []
        self._key = object()

    async def before_process(self) -> None:
        self.before_calls += 1

    async def process(self, entry, txn) -> None:
        staged = txn.get_resource(self._key)
        if staged is None:
            staged = []
            txn.bind_resource(self._key, staged)
        self.processed.append(entry)
        if entry in self.transient_once:
            self.transient_once.discard(entry)
            raise TransientCollaboratorFailure("conflict")
        if entry in self.fail_on:
            raise ValueError(f"cannot process {entry}")
        staged.append(entry)
        await asyncio.sleep(0)

    async def after_process(self, txn) -> None:
        staged = txn.get_resource(self._key, [])
        self.batches.append(list(staged))
        txn.after_commit(lambda: self.committed.extend(staged))


@pytest.mark.asyncio
async def test_single_worker_preserves_order_and_batching(executor):
    worker = RecordingWorker()
    processor = BatchProcessor(
        "test", executor, CollectionWorkProvider(["a", "b", "c", "d", "e"]), worker_threads=1, batch_size=2
    )

    errors = await processor.process(worker)

    assert errors == 0
    assert worker.committed == ["a", "b", "c", "d", "e"]
    assert worker.batches == [["a", "b"], ["c", "d"], ["e"]]
    assert worker.before_calls == 3
    assert processor.total_results == 5
    assert processor.successfully_processed_entries == 5
    assert processor.duration_ms is not None


@pytest.mark.asyncio
async def test_multiple_workers_process_everything(executor):
    entries = [f"user{i:02d}" for i in range(23)]
    worker = RecordingWorker()
    processor = BatchProcessor(
        "test", executor, CollectionWorkProvider(entries, chunk_size=10), worker_threads=4, batch_size=3
    )

    await processor.process(worker)

    assert sorted(worker.committed) == entries
    assert processor.total_results == 23


@pytest.mark.asyncio
async def test_transient_failure_retries_whole_batch(executor):
    worker = RecordingWorker(transient_once={"b"})
    processor = BatchProcessor(
        "test", executor, CollectionWorkProvider(["a", "b", "c"]), worker_threads=1, batch_size=3
    )

    await processor.process(worker)

    assert worker.processed == ["a", "b", "a", "b", "c"]
    assert worker.committed == ["a", "b", "c"]
    # Retries happen inside the executor; before_process runs once per batch
    assert worker.before_calls == 1


@pytest.mark.asyncio
async def test_failed_batch_reprocessed_entry_by_entry(executor):
    worker = RecordingWorker(fail_on={"b"})
    processor = BatchProcessor(
        "test", executor, CollectionWorkProvider(["a", "b", "c"]), worker_threads=1, batch_size=3
    )

    errors = await processor.process(worker)

    assert errors == 1
    assert worker.committed == ["a", "c"]
    assert processor.last_error_entry_id == "b"
    assert isinstance(processor.last_error, ValueError)
    assert processor.successfully_processed_entries == 2
    assert processor.total_results == 3


@pytest.mark.asyncio
async def test_batch_size_one_failure_keeps_others(executor):
    worker = RecordingWorker(fail_on={"b"})
    processor = BatchProcessor(
        "test", executor, CollectionWorkProvider(["a", "b", "c"]), worker_threads=1, batch_size=1
    )

    await processor.process(worker)

    assert worker.committed == ["a", "c"]
    assert processor.total_errors == 1


@pytest.mark.asyncio
async def test_empty_work(executor):
    worker = RecordingWorker()
    processor = BatchProcessor("test", executor, CollectionWorkProvider([]), worker_threads=2, batch_size=5)

    assert await processor.process(worker) == 0
    assert worker.before_calls == 0


@pytest.mark.parametrize(
    "threads,batch,interval", [(0, 1, 1), (1, 0, 1), (1, 1, 0), (-1, 5, 10)]
)
def test_invalid_sizes_rejected(executor, threads, batch, interval):
    with pytest.raises(ValueError):
        BatchProcessor(
            "test",
            executor,
            CollectionWorkProvider([]),
            worker_threads=threads,
            batch_size=batch,
            logging_interval=interval,
        )


@pytest.mark.asyncio
async def test_progress_logged_every_interval(executor):
    worker = RecordingWorker()
    processor = BatchProcessor(
        "test",
        executor,
        CollectionWorkProvider(["a", "b", "c", "d", "e"]),
        worker_threads=1,
        batch_size=1,
        logging_interval=2,
    )

    with patch("deauth.batch.processor.logger") as mock_logger:
        await processor.process(worker)

    progress = [
        c.kwargs["processed"]
        for c in mock_logger.info.call_args_list
        if c.args[0] == "Batch process progress"
    ]
    assert progress == [2, 4]
