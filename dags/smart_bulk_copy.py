"""
SQL Server Smart Bulk Copy DAG

Copies tables between two SQL Server databases with the smart bulk copy engine:
1. Connection tests on source and destination
2. Table list resolution ('*' copies every table of the source database)
3. Existence check of every table on both sides
4. Partition planning (physical partitions, or logical partitions over %%PhysLoc%%)
5. Optional truncation of the destination tables
6. Parallel partition copy with bulk inserts, reporting log flush throughput

Destination tables must already exist; this DAG does not create schemas.
"""

from airflow.sdk import dag, task
from airflow.exceptions import AirflowFailException
from airflow.models.param import Param
from pendulum import datetime
from typing import Any, Dict
import logging

from smart_bulk_copy import SmartBulkCopy, SmartBulkCopyConfig

logger = logging.getLogger(__name__)


@dag(
    start_date=datetime(2025, 1, 1),
    schedule=None,  # Run manually or trigger via API
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 0,
    },
    params={
        "source_conn_id": Param(
            default="mssql_source",
            type="string",
            description="Source SQL Server connection ID"
        ),
        "destination_conn_id": Param(
            default="mssql_destination",
            type="string",
            description="Destination SQL Server connection ID"
        ),
        "tables": Param(
            default=["*"],
            type="array",
            description="Tables in 'schema.table' format; '*' copies every source table"
        ),
        "batch_size": Param(
            default=100000,
            type="integer",
            minimum=1000,
            maximum=100000000,
            description="Rows per committed bulk insert batch"
        ),
        "tasks": Param(
            default=7,
            type="integer",
            minimum=1,
            maximum=32,
            description="Number of parallel copy workers"
        ),
        "logical_partitions": Param(
            default=7,
            type="integer",
            minimum=1,
            maximum=32,
            description="Logical partitions used for tables that are not physically partitioned"
        ),
        "truncate_tables": Param(
            default=False,
            type="boolean",
            description="Truncate destination tables before copying"
        ),
        "safe_check": Param(
            default="read-only",
            type="string",
            enum=["none", "read-only", "readonly", "snapshot"],
            description="Source safety check mode"
        ),
        "keep_identity": Param(
            default=True,
            type="boolean",
            description="Copy identity column values instead of generating new ones"
        ),
        "on_transfer_error": Param(
            default="continue",
            type="string",
            enum=["continue", "fail", "abort"],
            description="What to do when a partition fails to copy"
        ),
    },
    tags=["mssql", "bulk-copy", "etl", "full-refresh"],
)
def smart_bulk_copy():
    """
    DAG copying SQL Server tables with parallel partition transfers.
    """

    @task
    def copy_tables(**context) -> Dict[str, Any]:
        """
        Run the copy and fail the task on a non-zero exit code.

        Returns:
            Copy summary (pushed to XCom)
        """
        config = SmartBulkCopyConfig.from_params(context["params"])
        report = SmartBulkCopy(config).copy()

        summary = {
            "exit_code": report.exit_code,
            "state": report.state.value,
            "tables": report.tables,
            "tasks_planned": report.tasks_planned,
            "tasks_failed": len(report.failed_tasks),
            "rows_copied": report.rows_copied,
            "elapsed_seconds": round(report.elapsed_seconds, 2),
        }
        logger.info(f"Copy summary: {summary}")

        if not report.succeeded:
            raise AirflowFailException(
                f"Smart bulk copy failed with exit code {report.exit_code}: "
                f"{report.error or f'{len(report.failed_tasks)} partition(s) failed'}"
            )

        return summary

    copy_tables()


smart_bulk_copy()
