"""
Smart Bulk Copy Orchestrator

Runs one copy from source to destination:

1. Test both connections (concurrently)
2. Resolve the table list ('*' expands to every source table)
3. Check every table exists on both sides
4. Plan the copy tasks of each table
5. Optionally truncate the destination tables
6. Fill the task queue, start the log flush monitor and the worker pool,
   wait for both

Exit codes:
- 0: every table copied (or failed partitions tolerated by the 'continue' policy)
- 1: connectivity, validation, planning or truncation failure (nothing copied),
  or an unexpected error that stopped the copy phase
- 2: one or more partitions failed under the 'fail' or 'abort' policy
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import logging
import threading
import time

from smart_bulk_copy import __version__
from smart_bulk_copy.catalog import CatalogClient
from smart_bulk_copy.config import ON_ERROR_CONTINUE, SmartBulkCopyConfig
from smart_bulk_copy.exceptions import (
    ConnectivityError,
    SchemaValidationError,
    SmartBulkCopyError,
)
from smart_bulk_copy.monitor import ThroughputMonitor
from smart_bulk_copy.odbc_helper import OdbcConnectionHelper
from smart_bulk_copy.partitioning import CopyTask, PartitionPlanner
from smart_bulk_copy.table_config import resolve_table_list
from smart_bulk_copy.task_queue import CopyTaskQueue
from smart_bulk_copy.workers import TransferResult, WorkerPool

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FATAL = 1
EXIT_TRANSFER_FAILED = 2


class CopyState(str, Enum):
    INIT = 'init'
    PROBING_CONNECTIONS = 'probing_connections'
    RESOLVING_TABLES = 'resolving_tables'
    VALIDATING_EXISTENCE = 'validating_existence'
    PLANNING = 'planning'
    TRUNCATING = 'truncating'
    COPYING = 'copying'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class CopyReport:
    """Outcome of a copy run."""
    exit_code: int
    state: CopyState
    tables: List[str] = field(default_factory=list)
    tasks_planned: int = 0
    elapsed_seconds: float = 0.0
    results: List[TransferResult] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == EXIT_SUCCESS

    @property
    def failed_tasks(self) -> List[TransferResult]:
        return [r for r in self.results if not r.ok]

    @property
    def rows_copied(self) -> int:
        return sum(r.rows for r in self.results)


def build_catalogs(config: SmartBulkCopyConfig):
    """Create the source and destination catalog clients of a configuration."""
    source = CatalogClient(
        OdbcConnectionHelper(
            odbc_conn_id=config.source_conn_id,
            connection_string=config.source_connection_string,
        ),
        name='source',
    )
    destination = CatalogClient(
        OdbcConnectionHelper(
            odbc_conn_id=config.destination_conn_id,
            connection_string=config.destination_connection_string,
        ),
        name='destination',
    )
    return source, destination


class SmartBulkCopy:
    """
    Copy tables between two SQL Server databases using parallel partition transfers.

    An instance runs one copy at a time; the task queue of a run belongs to
    that run only.
    """

    def __init__(
        self,
        config: SmartBulkCopyConfig,
        source: Optional[CatalogClient] = None,
        destination: Optional[CatalogClient] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Validated configuration
            source: Source catalog (built from config when omitted)
            destination: Destination catalog (built from config when omitted)
        """
        self.config = config
        if source is None or destination is None:
            built_source, built_destination = build_catalogs(config)
            source = source or built_source
            destination = destination or built_destination
        self.source = source
        self.destination = destination

        self.state = CopyState.INIT
        self.work_queue: Optional[CopyTaskQueue] = None
        self._run_lock = threading.Lock()

        logger.info(f"SmartBulkCopy engine v. {__version__}")

    def _transition(self, state: CopyState) -> None:
        logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state

    def copy(self, tables: Optional[List[str]] = None) -> CopyReport:
        """
        Copy the configured tables (or the given ones).

        Args:
            tables: Table references overriding config.tables; may contain '*'

        Returns:
            CopyReport with exit code, elapsed copy time and per-task results

        Raises:
            RuntimeError: If a copy is already running on this instance
        """
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("A copy is already running on this SmartBulkCopy instance")
        try:
            self.state = CopyState.INIT
            return self._copy(list(tables) if tables is not None else list(self.config.tables))
        finally:
            self._run_lock.release()

    def _copy(self, configured_tables: List[str]) -> CopyReport:
        config = self.config
        self.work_queue = CopyTaskQueue()

        logger.info("Starting smart bulk copy process...")
        logger.info(f"Using up to {config.max_parallel_tasks} parallel tasks to copy data between databases.")
        logger.info(f"Batch Size is set to: {config.batch_size}.")
        logger.debug(f"Safe check mode: {config.safe_check}")

        tables: List[str] = []
        try:
            self._transition(CopyState.PROBING_CONNECTIONS)
            self._probe_connections()

            self._transition(CopyState.RESOLVING_TABLES)
            tables = resolve_table_list(configured_tables, self.source.list_all_tables)

            self._transition(CopyState.VALIDATING_EXISTENCE)
            self._validate_tables(tables)

            self._transition(CopyState.PLANNING)
            logger.info("Analyzing tables...")
            planner = PartitionPlanner(self.source, config.logical_partitions)
            tasks = planner.plan_all(tables)

            if config.truncate_tables:
                self._transition(CopyState.TRUNCATING)
                self._truncate_tables(tables)
        except SmartBulkCopyError as e:
            logger.error(str(e))
            return self._fail(tables, e)
        except Exception as e:
            logger.exception(f"Unexpected error while {self.state.value.replace('_', ' ')}")
            return self._fail(tables, e)

        self._transition(CopyState.COPYING)
        try:
            results, elapsed = self._run_copy(tasks)
        except Exception as e:
            logger.exception("Unexpected error while copying")
            return self._fail(tables, e, tasks_planned=len(tasks))

        failed = [r for r in results if not r.ok]
        exit_code = EXIT_SUCCESS
        if failed:
            logger.error(
                f"{len(failed)} of {len(tasks)} partition(s) failed to copy: "
                + ', '.join(str(r.task) for r in failed)
            )
            if config.on_transfer_error != ON_ERROR_CONTINUE:
                exit_code = EXIT_TRANSFER_FAILED

        self._transition(CopyState.DONE)
        logger.info(f"Done in {elapsed:.2f} secs")

        return CopyReport(
            exit_code=exit_code,
            state=self.state,
            tables=tables,
            tasks_planned=len(tasks),
            elapsed_seconds=elapsed,
            results=results,
        )

    def _fail(self, tables: List[str], error: Exception, tasks_planned: int = 0) -> CopyReport:
        self._transition(CopyState.FAILED)
        return CopyReport(
            exit_code=EXIT_FATAL,
            state=self.state,
            tables=tables,
            tasks_planned=tasks_planned,
            error=error,
        )

    def _probe_connections(self) -> None:
        """
        Test source and destination connections concurrently.

        Raises:
            ConnectivityError: If either side cannot be reached
        """
        logger.info("Testing connections...")
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='smartbulkcopy-probe') as executor:
            source_probe = executor.submit(self.source.probe)
            destination_probe = executor.submit(self.destination.probe)
            unreachable = [
                side for side, probe in (('source', source_probe), ('destination', destination_probe))
                if probe.result() is not True
            ]

        if unreachable:
            raise ConnectivityError(f"Cannot connect to {' and '.join(unreachable)} database")

    def _validate_tables(self, tables: List[str]) -> None:
        """
        Check every table on both sides, reporting all missing ones.

        Raises:
            SchemaValidationError: If any table is missing
        """
        missing = []
        for table in tables:
            if not self.source.table_exists(table):
                logger.error(f"Table {table} does not exist on source.")
                missing.append((table, 'source'))
            if not self.destination.table_exists(table):
                logger.error(f"Table {table} does not exist on destination.")
                missing.append((table, 'destination'))

        if missing:
            raise SchemaValidationError(missing)

    def _truncate_tables(self, tables: List[str]) -> None:
        logger.info("Truncating destination tables...")
        for table in tables:
            self.destination.truncate(table)

    def _run_copy(self, tasks: List[CopyTask]):
        """Drain the queue with the worker pool while the monitor runs."""
        config = self.config

        logger.info("Enqueuing work...")
        self.work_queue.fill(tasks)

        pool = WorkerPool(
            self.source,
            self.destination,
            self.work_queue,
            worker_count=config.max_parallel_tasks,
            batch_size=config.batch_size,
            keep_identity=config.keep_identity,
            on_transfer_error=config.on_transfer_error,
        )
        monitor = ThroughputMonitor(
            self.destination,
            self.work_queue,
            window_seconds=config.monitor_interval_seconds,
        )

        monitor.start()
        logger.info("Start copying...")
        started = time.monotonic()
        try:
            results = pool.run()
        finally:
            elapsed = time.monotonic() - started
            monitor.stop()
            logger.info("Waiting for monitor to shut down...")
            monitor.join()

        logger.info("Done copying.")
        if pool.aborted:
            logger.error(f"Copy aborted, {self.work_queue.size()} task(s) left unprocessed.")

        return results, elapsed
