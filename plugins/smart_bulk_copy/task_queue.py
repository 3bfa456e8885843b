"""
Copy Task Queue

Thread-safe work queue shared by the copy workers. It is filled exactly once
before the copy phase and only drained afterwards.
"""

from typing import Iterable, Optional
import logging
import queue
import threading

from smart_bulk_copy.partitioning import CopyTask

logger = logging.getLogger(__name__)


class CopyTaskQueue:
    """
    Single-fill, multi-consumer queue of CopyTask.

    Usage:
        work = CopyTaskQueue()
        work.fill(tasks)
        task = work.try_take()  # None once drained
    """

    def __init__(self):
        self._queue: queue.Queue = queue.Queue()
        self._fill_lock = threading.Lock()
        self._filled = False

    def fill(self, tasks: Iterable[CopyTask]) -> int:
        """
        Enqueue the full plan.

        Args:
            tasks: Every task of the run

        Returns:
            Number of tasks enqueued

        Raises:
            RuntimeError: If the queue has already been filled
        """
        with self._fill_lock:
            if self._filled:
                raise RuntimeError("Task queue can only be filled once")
            count = 0
            for task in tasks:
                self._queue.put_nowait(task)
                count += 1
            self._filled = True

        logger.info(f"{count} items enqueued.")
        return count

    def try_take(self) -> Optional[CopyTask]:
        """Remove and return one task, or None when the queue is empty. Never blocks."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def size(self) -> int:
        """Approximate number of tasks not yet taken."""
        return self._queue.qsize()

    def __len__(self) -> int:
        return self.size()

    @property
    def filled(self) -> bool:
        return self._filled
