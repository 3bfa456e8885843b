"""
Partition Planning Module

Decides how each table is split into disjoint row subsets and emits one
CopyTask per subset.

Two partitioning schemes exist:
- Physical: the source table is partitioned by SQL Server. Each task reads
  one partition, selected with $partition.<function>(<column>).
- Logical: the table is a heap/clustered index with a single partition. Rows
  are spread over N buckets by hashing their physical location (%%PhysLoc%%).
  With N == 1 the whole table is read by a single task without a predicate.
"""

from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Union
import logging

from smart_bulk_copy.exceptions import PlanningError
from smart_bulk_copy.table_config import quote_identifier

logger = logging.getLogger(__name__)

PHYSICAL_LOCATION_HASH = 'ABS(CAST(%%PhysLoc%% AS BIGINT))'


class PartitionKey(NamedTuple):
    """Partition function and partitioning column of a physically partitioned table."""
    function: str
    column: str


@dataclass(frozen=True)
class PhysicalScheme:
    """Partitioning derived from the source engine's own partition metadata."""
    partition_function: str
    partition_column: str
    partition_count: int


@dataclass(frozen=True)
class LogicalScheme:
    """Synthetic hash partitioning over the physical row location."""
    partition_count: int


PartitionScheme = Union[PhysicalScheme, LogicalScheme]


@dataclass(frozen=True)
class CopyTask:
    """One unit of work: one table, one partition."""
    table: str
    partition_number: int
    scheme: PartitionScheme

    @property
    def predicate(self) -> str:
        return build_predicate(self)

    def __str__(self) -> str:
        return f"{self.table} partition {self.partition_number}"


def build_predicate(task: CopyTask) -> str:
    """
    Build the WHERE predicate selecting the rows of a task's partition.

    Args:
        task: Copy task

    Returns:
        Predicate text, or an empty string when the task covers the whole table
    """
    scheme = task.scheme
    if isinstance(scheme, PhysicalScheme):
        return (
            f"$partition.{quote_identifier(scheme.partition_function)}"
            f"({quote_identifier(scheme.partition_column)}) = {task.partition_number}"
        )
    if isinstance(scheme, LogicalScheme):
        if scheme.partition_count > 1:
            return (
                f"{PHYSICAL_LOCATION_HASH} % {scheme.partition_count} = "
                f"{task.partition_number - 1}"
            )
        return ''
    raise TypeError(f"Unknown partition scheme: {scheme!r}")


def build_select(table: str, columns: List[str], predicate: str) -> str:
    """SELECT statement reading one partition of a table."""
    column_list = ', '.join(quote_identifier(c) for c in columns) if columns else '*'
    query = f"SELECT {column_list} FROM {table}"
    if predicate:
        query += f" WHERE {predicate}"
    return query


class PartitionPlanner:
    """Build copy tasks for tables using the source catalog metadata."""

    def __init__(self, source_catalog, logical_partitions: int):
        """
        Initialize the planner.

        Args:
            source_catalog: CatalogClient for the source database
            logical_partitions: Number of logical partitions for non-partitioned tables
        """
        self.source_catalog = source_catalog
        self.logical_partitions = logical_partitions

    def plan(self, table: str) -> List[CopyTask]:
        """
        Plan the copy tasks of a single table.

        Tables reporting a single physical partition are treated exactly like
        non-partitioned tables.

        Args:
            table: Quoted table reference, known to exist on both sides

        Returns:
            Tasks numbered 1..partition_count

        Raises:
            PlanningError: If the table reports several partitions but no
                partition function/column
        """
        partition_count = self.source_catalog.partition_count(table)

        if partition_count > 1:
            return self._plan_physical(table, partition_count)
        return self._plan_logical(table)

    def plan_all(self, tables: Iterable[str]) -> List[CopyTask]:
        """Plan every table and return one flat task list."""
        tasks: List[CopyTask] = []
        for table in tables:
            tasks.extend(self.plan(table))
        return tasks

    def _plan_physical(self, table: str, partition_count: int) -> List[CopyTask]:
        key = self.source_catalog.partition_key_info(table)
        if key is None or not key.function or not key.column:
            raise PlanningError(
                table,
                f"{partition_count} partitions reported but no partition function/column found",
            )

        logger.info(
            f"Table {table} is partitioned. Bulk copy will be parallelized using "
            f"{partition_count} partition(s)."
        )
        scheme = PhysicalScheme(
            partition_function=key.function,
            partition_column=key.column,
            partition_count=partition_count,
        )
        return [CopyTask(table, n, scheme) for n in range(1, partition_count + 1)]

    def _plan_logical(self, table: str) -> List[CopyTask]:
        logger.info(
            f"Table {table} is NOT partitioned. Bulk copy will be parallelized using "
            f"{self.logical_partitions} logical partition(s)."
        )
        scheme = LogicalScheme(partition_count=self.logical_partitions)
        return [CopyTask(table, n, scheme) for n in range(1, self.logical_partitions + 1)]
