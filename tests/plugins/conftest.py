"""
Shared fixtures: an in-memory stand-in for CatalogClient.

FakeCatalog evaluates the partition predicates produced by the planner
against in-memory rows, so engine tests can check which rows reach the
destination without a SQL Server instance.
"""

import random
import re
import threading
from typing import Dict, List, Optional

import pytest
from unittest.mock import MagicMock

from smart_bulk_copy.partitioning import PartitionKey

_LOGICAL = re.compile(r'% (\d+) = (\d+)$')
_PHYSICAL = re.compile(r'^\$partition\.\[[^\]]+\]\(\[[^\]]+\]\) = (\d+)$')


class FakeStream:
    def __init__(self, rows, columns, predicate):
        self.rows = rows
        self.columns = columns
        self.predicate = predicate
        self.closed = False
        self.rows_read = 0

    def __iter__(self):
        for row in self.rows:
            self.rows_read += 1
            yield row

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class FakeCatalog:
    """Thread-safe in-memory catalog recording every call of interest."""

    def __init__(self, name: str, events: Optional[list] = None):
        self.name = name
        self.reachable = True
        self.tables: Dict[str, dict] = {}
        self.written: Dict[str, List[tuple]] = {}
        self.events = events if events is not None else []
        self.streams: List[FakeStream] = []
        self.connections: List[MagicMock] = []
        self.fail_predicates = set()
        self.throughput_error = None
        self._lock = threading.Lock()

    def add_table(self, table: str, row_count: int = 0, partitions: int = 1,
                  key: Optional[PartitionKey] = None, seed: int = 7):
        rng = random.Random(seed)
        rows = [
            (i, rng.randint(-2 ** 62, 2 ** 62), (i % partitions) + 1)
            for i in range(row_count)
        ]
        self.tables[table] = {'rows': rows, 'partitions': partitions, 'key': key}
        self.written.setdefault(table, [])

    def _record(self, *event):
        with self._lock:
            self.events.append(event)

    # Catalog contract

    def probe(self) -> bool:
        return self.reachable

    def table_exists(self, table: str) -> bool:
        return table in self.tables

    def list_all_tables(self) -> List[str]:
        return list(self.tables)

    def partition_count(self, table: str) -> int:
        return self.tables[table]['partitions']

    def partition_key_info(self, table: str):
        return self.tables[table]['key']

    def truncate(self, table: str) -> None:
        self._record('truncate', self.name, table)
        with self._lock:
            self.written[table] = []

    def connect(self, application_name=None):
        conn = MagicMock(name=f"{self.name}:{application_name}")
        with self._lock:
            self.connections.append(conn)
        return conn

    def insertable_columns(self, table: str, keep_identity: bool = True) -> List[str]:
        return ['id', 'physloc', 'partition_id']

    def stream_rows(self, conn, table, columns, predicate, fetch_size=10_000):
        rows = self.tables[table]['rows']
        logical = _LOGICAL.search(predicate) if predicate else None
        physical = _PHYSICAL.match(predicate) if predicate else None
        if logical:
            count, remainder = int(logical.group(1)), int(logical.group(2))
            selected = [r for r in rows if abs(r[1]) % count == remainder]
        elif physical:
            number = int(physical.group(1))
            selected = [r for r in rows if r[2] == number]
        elif not predicate:
            selected = list(rows)
        else:
            raise AssertionError(f"Unexpected predicate: {predicate}")

        stream = FakeStream(selected, columns, predicate)
        with self._lock:
            self.streams.append(stream)
        self._record('read', self.name, table, predicate)
        return stream

    def bulk_load(self, conn, table, columns, rows, batch_size, keep_identity=False) -> int:
        predicate = getattr(rows, 'predicate', None)
        if (table, predicate) in self.fail_predicates:
            raise RuntimeError(f"bulk load failed for {table}") from OSError("connection reset")
        loaded = list(rows)
        with self._lock:
            self.written.setdefault(table, []).extend(loaded)
        self._record('write', self.name, table, predicate)
        return len(loaded)

    def log_flush_instance(self, conn) -> str:
        return 'db-instance'

    def sample_throughput_counter(self, conn, counter_name, instance_name, window_seconds):
        if self.throughput_error is not None:
            raise self.throughput_error
        return 12.5


@pytest.fixture
def events():
    return []


@pytest.fixture
def source(events):
    return FakeCatalog('source', events)


@pytest.fixture
def destination(events):
    return FakeCatalog('destination', events)
