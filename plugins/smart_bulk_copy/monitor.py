"""
Log Flush Monitor

Background thread reporting the destination transaction log flush rate while
the copy phase runs. It is purely informational: sampling problems are
logged and never reach the copy workers.
"""

from typing import List, Optional
import logging
import threading

from smart_bulk_copy.catalog import LOG_FLUSH_COUNTER
from smart_bulk_copy.exceptions import MonitorSamplingError
from smart_bulk_copy.task_queue import CopyTaskQueue

logger = logging.getLogger(__name__)

MONITOR_APPLICATION_NAME = 'smartbulkcopy_log_monitor'


class ThroughputMonitor:
    """
    Sample destination write throughput until the copy is over.

    The loop ends when the orchestrator calls stop() after joining the
    workers, or earlier once the task queue is seen empty.
    """

    def __init__(
        self,
        destination,
        work_queue: CopyTaskQueue,
        window_seconds: float = 5.0,
        counter_name: str = LOG_FLUSH_COUNTER,
    ):
        """
        Args:
            destination: CatalogClient of the destination database
            work_queue: Task queue whose emptiness ends monitoring
            window_seconds: Length of each sampling window
            counter_name: Cumulative performance counter to sample
        """
        self.destination = destination
        self.work_queue = work_queue
        self.window_seconds = window_seconds
        self.counter_name = counter_name
        self.samples: List[float] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        logger.info("Starting monitor...")
        self._thread = threading.Thread(
            target=self.run,
            name='smartbulkcopy-log-monitor',
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Signal that all workers have finished."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _should_stop(self) -> bool:
        return self._stop_event.is_set() or self.work_queue.size() == 0

    def run(self) -> None:
        """Monitoring loop; returns instead of raising."""
        conn = None
        try:
            conn = self.destination.connect(application_name=MONITOR_APPLICATION_NAME)
            instance_name = self.destination.log_flush_instance(conn)
        except Exception as e:
            logger.warning(f"Log flush monitor disabled: {e}")
            self._close(conn)
            return

        try:
            while True:
                try:
                    rate = self.destination.sample_throughput_counter(
                        conn, self.counter_name, instance_name, self.window_seconds
                    )
                    self.samples.append(rate)
                    logger.info(f"Log Flush Speed: {rate:05.2f} MB/Sec")
                except MonitorSamplingError as e:
                    logger.warning(f"Could not sample log flush rate: {e}")
                    if self._stop_event.wait(self.window_seconds):
                        break

                if self._should_stop():
                    break
        except Exception as e:
            logger.warning(f"Log flush monitor stopped: {e}")
        finally:
            self._close(conn)

    def _close(self, conn) -> None:
        if conn is None:
            return
        try:
            conn.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing monitor connection: {e}")
