"""
SQL Server Catalog Client

Metadata queries, partition reads and bulk loads against one SQL Server
endpoint. The copy engine holds one CatalogClient for the source and one for
the destination.

Metadata calls open and close their own connection. Streaming reads and bulk
loads run on a connection owned by the caller (see connect()), so every copy
worker and the log monitor keep their sessions to themselves.
"""

from typing import Any, Iterator, List, Optional, Tuple
import logging
import time

from smart_bulk_copy.exceptions import MonitorSamplingError
from smart_bulk_copy.odbc_helper import OdbcConnectionHelper
from smart_bulk_copy.partitioning import PartitionKey, build_select
from smart_bulk_copy.table_config import quote_identifier

logger = logging.getLogger(__name__)

LOG_FLUSH_COUNTER = 'Log Bytes Flushed/sec'
DEFAULT_FETCH_SIZE = 10_000

_TABLE_EXISTS_SQL = """
SELECT QUOTENAME(s.name) + '.' + QUOTENAME(t.name)
FROM sys.tables t
INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
WHERE s.name = PARSENAME(?, 2)
  AND t.name = PARSENAME(?, 1)
"""

_LIST_TABLES_SQL = """
SELECT QUOTENAME(s.name) + '.' + QUOTENAME(t.name)
FROM sys.tables t
INNER JOIN sys.schemas s ON t.schema_id = s.schema_id
WHERE t.is_ms_shipped = 0
ORDER BY s.name, t.name
"""

_PARTITION_COUNT_SQL = """
SELECT COUNT(*)
FROM sys.dm_db_partition_stats
WHERE object_id = OBJECT_ID(?)
  AND index_id IN (0, 1)
"""

_PARTITION_KEY_SQL = """
SELECT pf.name AS partition_function,
       c.name AS partition_column
FROM sys.indexes i
INNER JOIN sys.partition_schemes ps ON i.data_space_id = ps.data_space_id
INNER JOIN sys.partition_functions pf ON ps.function_id = pf.function_id
INNER JOIN sys.index_columns ic ON i.object_id = ic.object_id AND i.index_id = ic.index_id
INNER JOIN sys.columns c ON c.object_id = i.object_id AND c.column_id = ic.column_id
WHERE i.object_id = OBJECT_ID(?)
  AND i.index_id IN (0, 1)
  AND ic.partition_ordinal = 1
"""

# Computed and rowversion (system type 189) columns cannot be inserted
_INSERTABLE_COLUMNS_SQL = """
SELECT c.name
FROM sys.columns c
WHERE c.object_id = OBJECT_ID(?)
  AND c.is_computed = 0
  AND c.system_type_id <> 189
  AND (c.is_identity = 0 OR ? = 1)
ORDER BY c.column_id
"""

_HAS_IDENTITY_SQL = """
SELECT COUNT(*)
FROM sys.identity_columns
WHERE object_id = OBJECT_ID(?)
"""

_COUNTER_INSTANCE_SQL = """
SELECT TOP 1 RTRIM(instance_name)
FROM sys.dm_os_performance_counters
WHERE counter_name = ?
  AND (instance_name LIKE '%-%-%-%-%' OR instance_name = DB_NAME())
ORDER BY CASE WHEN instance_name LIKE '%-%-%-%-%' THEN 0 ELSE 1 END
"""

_COUNTER_VALUE_SQL = """
SELECT cntr_value
FROM sys.dm_os_performance_counters
WHERE counter_name = ?
  AND instance_name = ?
"""


class RowStream:
    """
    Forward-only stream over the rows of a partition read.

    Iterating yields row tuples, fetched from the cursor in batches of
    fetch_size. close() is idempotent and must be called by the consumer.
    """

    def __init__(self, cursor, fetch_size: int = DEFAULT_FETCH_SIZE):
        self._cursor = cursor
        self._fetch_size = fetch_size
        self._closed = False
        self.columns: List[str] = [d[0] for d in (cursor.description or [])]
        self.rows_read = 0

    def __iter__(self) -> Iterator[Tuple[Any, ...]]:
        while not self._closed:
            rows = self._cursor.fetchmany(self._fetch_size)
            if not rows:
                break
            self.rows_read += len(rows)
            for row in rows:
                yield tuple(row)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cursor.close()

    def __enter__(self) -> "RowStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class CatalogClient:
    """Catalog and data access for one SQL Server database."""

    def __init__(self, helper: OdbcConnectionHelper, name: str = 'database'):
        """
        Args:
            helper: Connection helper for the database
            name: Role of the database in log messages ('source' or 'destination')
        """
        self.helper = helper
        self.name = name

    def __repr__(self) -> str:
        return f"CatalogClient({self.name})"

    def connect(self, application_name: Optional[str] = None):
        """Open a dedicated connection; the caller closes it."""
        return self.helper.get_conn(application_name=application_name)

    def probe(self) -> bool:
        return self.helper.probe()

    def table_exists(self, table: str) -> bool:
        row = self.helper.get_first(_TABLE_EXISTS_SQL, parameters=[table, table])
        return row is not None

    def list_all_tables(self) -> List[str]:
        """All user tables as '[schema].[table]'."""
        return [row[0] for row in self.helper.get_records(_LIST_TABLES_SQL)]

    def partition_count(self, table: str) -> int:
        """Number of partitions of the heap or clustered index."""
        logger.debug(f"Executing: {_PARTITION_COUNT_SQL.strip()} [{table}]")
        row = self.helper.get_first(_PARTITION_COUNT_SQL, parameters=[table])
        return int(row[0]) if row and row[0] is not None else 0

    def partition_key_info(self, table: str) -> Optional[PartitionKey]:
        """
        Partition function and first partitioning column.

        Returns:
            PartitionKey, or None if the table has no partition scheme
        """
        logger.debug(f"Executing: {_PARTITION_KEY_SQL.strip()} [{table}]")
        rows = self.helper.get_records(_PARTITION_KEY_SQL, parameters=[table])
        if not rows:
            return None
        function, column = rows[0][0], rows[0][1]
        return PartitionKey(function=function, column=column)

    def truncate(self, table: str) -> None:
        logger.info(f"Truncating '{table}'...")
        self.helper.run(f"TRUNCATE TABLE {table}", autocommit=True)

    def insertable_columns(self, table: str, keep_identity: bool = True) -> List[str]:
        """
        Columns of the table that can receive bulk-loaded values, in column order.

        Args:
            table: Quoted table reference
            keep_identity: Include identity columns (values copied from the source)
        """
        rows = self.helper.get_records(
            _INSERTABLE_COLUMNS_SQL, parameters=[table, 1 if keep_identity else 0]
        )
        return [row[0] for row in rows]

    def has_identity_column(self, table: str) -> bool:
        row = self.helper.get_first(_HAS_IDENTITY_SQL, parameters=[table])
        return bool(row and row[0])

    def stream_rows(
        self,
        conn,
        table: str,
        columns: List[str],
        predicate: str,
        fetch_size: int = DEFAULT_FETCH_SIZE,
    ) -> RowStream:
        """
        Start reading the rows of a table matching a predicate.

        Args:
            conn: Connection owned by the caller
            table: Quoted table reference
            columns: Columns to read (all columns when empty)
            predicate: WHERE predicate, empty for a full scan
            fetch_size: Rows fetched from the server per round trip

        Returns:
            Open RowStream; the caller closes it
        """
        query = build_select(table, columns, predicate)
        logger.debug(f"Executing: {query}")
        cursor = conn.cursor()
        try:
            cursor.execute(query)
        except Exception:
            cursor.close()
            raise
        return RowStream(cursor, fetch_size=fetch_size)

    def bulk_load(
        self,
        conn,
        table: str,
        columns: List[str],
        rows,
        batch_size: int,
        keep_identity: bool = False,
        chunk_size: int = DEFAULT_FETCH_SIZE,
    ) -> int:
        """
        Insert rows into a table, committing every batch_size rows.

        Rows are pulled from the iterable and sent with fast_executemany in
        chunks of at most chunk_size rows, so memory use does not grow with
        batch_size. The statement timeout is disabled for the whole load.

        No table lock hint is used: on a parameterized INSERT, TABLOCK takes an
        exclusive lock, which would serialize the workers loading different
        partitions of the same table.

        Args:
            conn: Connection owned by the caller
            table: Quoted table reference
            columns: Target column names, matching the row tuples
            rows: Iterable of row tuples
            batch_size: Rows per committed batch
            keep_identity: Insert source identity values (IDENTITY_INSERT ON)
            chunk_size: Maximum rows per executemany round trip

        Returns:
            Number of rows written
        """
        column_list = ', '.join(quote_identifier(c) for c in columns)
        placeholders = ', '.join('?' for _ in columns)
        insert_sql = f"INSERT INTO {table} ({column_list}) VALUES ({placeholders})"
        logger.debug(f"Executing: {insert_sql}")

        conn.timeout = 0
        conn.autocommit = False
        cursor = conn.cursor()
        cursor.fast_executemany = True

        identity_insert = keep_identity and self.has_identity_column(table)
        rows_written = 0
        uncommitted = 0
        try:
            if identity_insert:
                cursor.execute(f"SET IDENTITY_INSERT {table} ON")

            chunk: List[Tuple[Any, ...]] = []
            for row in rows:
                chunk.append(row)
                # Chunks never cross a batch boundary
                if len(chunk) >= min(chunk_size, batch_size - uncommitted):
                    cursor.executemany(insert_sql, chunk)
                    rows_written += len(chunk)
                    uncommitted += len(chunk)
                    chunk = []
                    if uncommitted >= batch_size:
                        conn.commit()
                        uncommitted = 0
            if chunk:
                cursor.executemany(insert_sql, chunk)
                rows_written += len(chunk)
                uncommitted += len(chunk)
            if uncommitted:
                conn.commit()

            if identity_insert:
                cursor.execute(f"SET IDENTITY_INSERT {table} OFF")
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

        return rows_written

    def log_flush_instance(self, conn) -> str:
        """
        Performance counter instance of the current database.

        Azure SQL Database reports counters under a GUID instance name; on
        other editions the instance is the database name.

        Raises:
            MonitorSamplingError: If no matching counter instance exists
        """
        try:
            cursor = conn.cursor()
            cursor.execute(_COUNTER_INSTANCE_SQL, [LOG_FLUSH_COUNTER])
            row = cursor.fetchone()
            cursor.close()
        except Exception as e:
            raise MonitorSamplingError(f"Cannot read performance counters: {e}") from e

        if not row or not row[0]:
            raise MonitorSamplingError(f"Performance counter '{LOG_FLUSH_COUNTER}' not found")
        return row[0]

    def sample_throughput_counter(
        self,
        conn,
        counter_name: str,
        instance_name: str,
        window_seconds: float,
    ) -> float:
        """
        Measure the rate of a cumulative per-second counter.

        Reads the counter twice, window_seconds apart.

        Returns:
            Rate in MB/sec

        Raises:
            MonitorSamplingError: If the counter cannot be read
        """
        start_value = self._read_counter(conn, counter_name, instance_name)
        started = time.monotonic()
        time.sleep(window_seconds)
        end_value = self._read_counter(conn, counter_name, instance_name)
        elapsed = time.monotonic() - started

        if elapsed <= 0:
            return 0.0
        return (end_value - start_value) / elapsed / 1024.0 / 1024.0

    def _read_counter(self, conn, counter_name: str, instance_name: str) -> int:
        try:
            cursor = conn.cursor()
            cursor.execute(_COUNTER_VALUE_SQL, [counter_name, instance_name])
            row = cursor.fetchone()
            cursor.close()
        except Exception as e:
            raise MonitorSamplingError(f"Cannot read counter '{counter_name}': {e}") from e

        if not row or row[0] is None:
            raise MonitorSamplingError(
                f"Counter '{counter_name}' has no value for instance '{instance_name}'"
            )
        return int(row[0])
