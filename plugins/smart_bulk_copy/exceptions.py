"""
Smart Bulk Copy Errors

Fatal errors (connectivity, schema validation, planning) stop a run before
any row is moved. Transfer and monitor errors are recovered locally.
"""

from typing import List, Optional, Tuple


class SmartBulkCopyError(Exception):
    """Base class for all smart bulk copy errors."""


class ConfigurationError(SmartBulkCopyError, ValueError):
    """A configuration value is missing or out of bounds."""


class ConnectivityError(SmartBulkCopyError):
    """Source or destination database could not be reached."""


class SchemaValidationError(SmartBulkCopyError):
    """One or more tables are missing on the source or the destination."""

    def __init__(self, missing: List[Tuple[str, str]]):
        """
        Args:
            missing: List of (table, side) pairs, side being 'source' or 'destination'
        """
        self.missing = missing
        details = ', '.join(f"{table} ({side})" for table, side in missing)
        super().__init__(f"Tables missing: {details}")


class PlanningError(SmartBulkCopyError):
    """Partition metadata for a table is inconsistent."""

    def __init__(self, table: str, message: str):
        self.table = table
        super().__init__(f"Cannot plan copy of {table}: {message}")


class TransferError(SmartBulkCopyError):
    """Copying a single partition failed."""

    def __init__(self, task, message: Optional[str] = None):
        self.task = task
        super().__init__(
            message or f"Transfer of {task.table} partition {task.partition_number} failed"
        )


class MonitorSamplingError(SmartBulkCopyError):
    """The destination throughput counter could not be sampled."""
