"""
Copy Workers

A fixed number of worker threads drain the shared CopyTaskQueue. For every
task a worker opens its own source and destination connections, streams the
partition rows from the source and bulk loads them into the destination.

A failing task is logged with its full cause chain and recorded as a failed
TransferResult. It is never retried; what happens to the rest of the run
depends on the transfer error policy:

- continue: keep copying, the run still succeeds
- fail: keep copying, the run is reported as failed at the end
- abort: stop claiming new tasks, the run is reported as failed
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional
import logging
import threading
import time

from smart_bulk_copy.config import ON_ERROR_ABORT, ON_ERROR_CONTINUE
from smart_bulk_copy.exceptions import TransferError
from smart_bulk_copy.partitioning import CopyTask
from smart_bulk_copy.task_queue import CopyTaskQueue

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    """Outcome of one copy task."""
    task: CopyTask
    worker_id: int
    rows: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[TransferError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def format_error_chain(error: BaseException) -> str:
    """Render an exception and every exception it was raised from or during."""
    messages = []
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        messages.append(f"{type(current).__name__}: {current}")
        current = current.__cause__ or current.__context__
    return ' <- '.join(messages)


def _close_quietly(resource) -> None:
    if resource is None:
        return
    try:
        resource.close()
    except Exception as e:
        logger.debug(f"Ignoring error while closing {resource!r}: {e}")


class TransferWorker:
    """Copy loop executed by each worker thread."""

    def __init__(
        self,
        source,
        destination,
        work_queue: CopyTaskQueue,
        batch_size: int,
        keep_identity: bool = True,
        on_transfer_error: str = ON_ERROR_CONTINUE,
        abort_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the worker.

        Args:
            source: CatalogClient of the source database
            destination: CatalogClient of the destination database
            work_queue: Filled task queue shared by all workers
            batch_size: Rows per committed bulk load batch
            keep_identity: Copy identity values instead of regenerating them
            on_transfer_error: Transfer error policy
            abort_event: Event set when the abort policy stops the pool
        """
        self.source = source
        self.destination = destination
        self.work_queue = work_queue
        self.batch_size = batch_size
        self.keep_identity = keep_identity
        self.on_transfer_error = on_transfer_error
        self.abort_event = abort_event or threading.Event()

    def run(self, worker_id: int) -> List[TransferResult]:
        """
        Take and copy tasks until the queue is empty.

        Args:
            worker_id: 1-based worker number, used in logs and the session name

        Returns:
            Results of the tasks this worker processed
        """
        logger.info(f"Task {worker_id}: Started...")
        results: List[TransferResult] = []

        while not self.abort_event.is_set():
            task = self.work_queue.try_take()
            if task is None:
                break

            result = self.transfer(worker_id, task)
            results.append(result)

            if not result.ok and self.on_transfer_error == ON_ERROR_ABORT:
                if not self.abort_event.is_set():
                    logger.error(f"Task {worker_id}: Aborting copy after failure of {task}.")
                self.abort_event.set()

        logger.info(f"Task {worker_id}: Done.")
        return results

    def transfer(self, worker_id: int, task: CopyTask) -> TransferResult:
        """Copy one partition. Never raises for database errors."""
        logger.info(
            f"Task {worker_id}: Processing table {task.table} partition {task.partition_number}..."
        )
        application_name = f"smartbulkcopy{worker_id}"
        started = time.monotonic()
        source_conn = None
        destination_conn = None

        try:
            source_conn = self.source.connect(application_name=application_name)
            destination_conn = self.destination.connect(application_name=application_name)

            columns = self.destination.insertable_columns(task.table, self.keep_identity)
            with self.source.stream_rows(source_conn, task.table, columns, task.predicate) as stream:
                rows = self.destination.bulk_load(
                    destination_conn,
                    task.table,
                    columns or stream.columns,
                    stream,
                    self.batch_size,
                    keep_identity=self.keep_identity,
                )
                rows_read = stream.rows_read
        except Exception as e:
            error = TransferError(task)
            error.__cause__ = e
            logger.error(
                f"Task {worker_id}: Table {task.table}, partition {task.partition_number} "
                f"failed: {format_error_chain(e)}"
            )
            return TransferResult(
                task=task,
                worker_id=worker_id,
                elapsed_seconds=time.monotonic() - started,
                error=error,
            )
        finally:
            _close_quietly(destination_conn)
            _close_quietly(source_conn)

        if rows != rows_read:
            logger.warning(
                f"Task {worker_id}: Table {task.table}, partition {task.partition_number}: "
                f"{rows_read:,} rows read but {rows:,} rows written."
            )

        elapsed = time.monotonic() - started
        logger.info(
            f"Task {worker_id}: Table {task.table}, partition {task.partition_number} copied "
            f"({rows:,} rows in {elapsed:.2f}s)."
        )
        return TransferResult(task=task, worker_id=worker_id, rows=rows, elapsed_seconds=elapsed)


class WorkerPool:
    """Run a fixed number of TransferWorker loops concurrently."""

    def __init__(
        self,
        source,
        destination,
        work_queue: CopyTaskQueue,
        worker_count: int,
        batch_size: int,
        keep_identity: bool = True,
        on_transfer_error: str = ON_ERROR_CONTINUE,
    ):
        self.worker_count = worker_count
        self.abort_event = threading.Event()
        self.worker = TransferWorker(
            source,
            destination,
            work_queue,
            batch_size,
            keep_identity=keep_identity,
            on_transfer_error=on_transfer_error,
            abort_event=self.abort_event,
        )

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def run(self) -> List[TransferResult]:
        """
        Start all workers and wait for every one of them to finish.

        Returns:
            Results of all processed tasks
        """
        logger.info(f"Copying using {self.worker_count} parallel tasks.")
        results: List[TransferResult] = []

        with ThreadPoolExecutor(
            max_workers=self.worker_count,
            thread_name_prefix='smartbulkcopy',
        ) as executor:
            futures = [
                executor.submit(self.worker.run, worker_id)
                for worker_id in range(1, self.worker_count + 1)
            ]
            for future in futures:
                results.extend(future.result())

        return results
