"""
SQL Server Smart Bulk Copy

Copies tables between two SQL Server databases as fast as possible by
splitting every table into disjoint partitions and copying the partitions
in parallel with bulk loads.

Modules:
- odbc_helper: pyodbc connections from Airflow connection ids or connection strings
- catalog: Metadata queries, partition reads and bulk loads
- table_config: Table reference parsing and table list resolution
- partitioning: Physical/logical partition schemes and the partition planner
- task_queue: Work queue shared by the copy workers
- workers: Parallel copy workers
- monitor: Destination log flush monitor
- orchestrator: The copy run itself
- config: Run configuration

Usage:
    config = load_config_file("smartbulkcopy.config")
    report = SmartBulkCopy(config).copy()
    sys.exit(report.exit_code)
"""

__version__ = "1.0.0"

from smart_bulk_copy.config import SmartBulkCopyConfig, load_config_file
from smart_bulk_copy.orchestrator import CopyReport, CopyState, SmartBulkCopy

__all__ = [
    "CopyReport",
    "CopyState",
    "SmartBulkCopy",
    "SmartBulkCopyConfig",
    "load_config_file",
]
