"""
Tests for the Copy Workers

These tests validate the per-task transfer, failure isolation, resource
cleanup and the transfer error policies using in-memory catalogs.
"""

from collections import Counter
import logging

import pytest

from smart_bulk_copy.exceptions import TransferError
from smart_bulk_copy.partitioning import (
    PartitionKey,
    PartitionPlanner,
)
from smart_bulk_copy.task_queue import CopyTaskQueue
from smart_bulk_copy.workers import (
    TransferWorker,
    WorkerPool,
    format_error_chain,
)


def _fill(source, tables, logical_partitions=4):
    work = CopyTaskQueue()
    tasks = PartitionPlanner(source, logical_partitions).plan_all(tables)
    work.fill(tasks)
    return work, tasks


class TestTransferWorker:
    """Test TransferWorker."""

    def test_copies_one_partition(self, source, destination):
        source.add_table('[dbo].[Users]', row_count=200)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'])
        worker = TransferWorker(source, destination, work, batch_size=1000)

        result = worker.transfer(1, tasks[0])

        assert result.ok
        assert result.rows == len(destination.written['[dbo].[Users]'])
        assert all(abs(row[1]) % 4 == 0 for row in destination.written['[dbo].[Users]'])

    def test_connections_are_dedicated_and_closed(self, source, destination):
        source.add_table('[dbo].[Users]', row_count=10)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'])

        TransferWorker(source, destination, work, batch_size=1000).transfer(5, tasks[0])

        assert len(source.connections) == 1
        assert len(destination.connections) == 1
        source.connections[0].close.assert_called_once()
        destination.connections[0].close.assert_called_once()
        assert all(stream.closed for stream in source.streams)

    def test_failure_is_recorded_not_raised(self, source, destination):
        source.add_table('[dbo].[Users]', row_count=50)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'])
        destination.fail_predicates.add(('[dbo].[Users]', tasks[1].predicate))

        result = TransferWorker(source, destination, work, batch_size=1000).transfer(1, tasks[1])

        assert not result.ok
        assert isinstance(result.error, TransferError)
        assert result.error.task == tasks[1]
        assert isinstance(result.error.__cause__, RuntimeError)
        assert all(stream.closed for stream in source.streams)
        destination.connections[0].close.assert_called_once()

    def test_run_continues_after_failure(self, source, destination):
        source.add_table('[dbo].[Users]', row_count=100)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'])
        destination.fail_predicates.add(('[dbo].[Users]', tasks[0].predicate))

        results = TransferWorker(source, destination, work, batch_size=1000).run(1)

        assert len(results) == 4
        assert [r.ok for r in results] == [False, True, True, True]
        assert work.size() == 0

    def test_abort_policy_stops_claiming_tasks(self, source, destination):
        source.add_table('[dbo].[Users]', row_count=100)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'])
        destination.fail_predicates.add(('[dbo].[Users]', tasks[0].predicate))

        worker = TransferWorker(source, destination, work, batch_size=1000, on_transfer_error='abort')
        results = worker.run(1)

        assert len(results) == 1
        assert worker.abort_event.is_set()
        assert work.size() == 3

    def test_connect_failure_is_a_transfer_error(self, source, destination):
        source.add_table('[dbo].[Users]', row_count=10)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'])

        def refuse(application_name=None):
            raise ConnectionError('TCP Provider: Error code 0x68')

        destination.connect = refuse

        result = TransferWorker(source, destination, work, batch_size=1000).transfer(1, tasks[0])

        assert not result.ok
        source.connections[0].close.assert_called_once()

    def test_rows_read_match_rows_written(self, source, destination):
        source.add_table('[dbo].[Users]', row_count=40)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'], logical_partitions=1)

        result = TransferWorker(source, destination, work, batch_size=1000).transfer(1, tasks[0])

        assert result.rows == 40
        assert source.streams[0].rows_read == 40

    def test_row_count_mismatch_is_logged(self, source, destination, caplog):
        source.add_table('[dbo].[Users]', row_count=40)
        destination.add_table('[dbo].[Users]')
        work, tasks = _fill(source, ['[dbo].[Users]'], logical_partitions=1)

        def lossy_load(conn, table, columns, rows, batch_size, keep_identity=False):
            return len(list(rows)) - 1

        destination.bulk_load = lossy_load

        with caplog.at_level(logging.WARNING, logger='smart_bulk_copy.workers'):
            result = TransferWorker(source, destination, work, batch_size=1000).transfer(1, tasks[0])

        assert result.ok
        assert '40 rows read but 39 rows written' in caplog.text


class TestWorkerPool:
    """Test WorkerPool."""

    @pytest.mark.parametrize('worker_count', [1, 3, 7, 32])
    def test_every_task_processed_exactly_once(self, source, destination, worker_count):
        source.add_table('[dbo].[A]', row_count=300, partitions=5, key=PartitionKey('pf', 'Id'))
        source.add_table('[dbo].[B]', row_count=300)
        destination.add_table('[dbo].[A]')
        destination.add_table('[dbo].[B]')
        work, tasks = _fill(source, ['[dbo].[A]', '[dbo].[B]'], logical_partitions=6)

        results = WorkerPool(source, destination, work, worker_count, batch_size=1000).run()

        processed = Counter((r.task.table, r.task.partition_number) for r in results)
        assert len(results) == len(tasks) == 11
        assert set(processed) == {(t.table, t.partition_number) for t in tasks}
        assert max(processed.values()) == 1
        assert sorted(destination.written['[dbo].[A]']) == sorted(source.tables['[dbo].[A]']['rows'])
        assert sorted(destination.written['[dbo].[B]']) == sorted(source.tables['[dbo].[B]']['rows'])

    def test_each_worker_uses_its_own_application_name(self, source, destination):
        source.add_table('[dbo].[A]', row_count=10)
        destination.add_table('[dbo].[A]')
        work, _ = _fill(source, ['[dbo].[A]'], logical_partitions=8)

        results = WorkerPool(source, destination, work, 3, batch_size=1000).run()

        assert {r.worker_id for r in results} <= {1, 2, 3}
        names = {c._extract_mock_name() for c in source.connections}
        assert names <= {f"source:smartbulkcopy{i}" for i in (1, 2, 3)}


class TestFormatErrorChain:
    """Test format_error_chain."""

    def test_includes_causes(self):
        try:
            try:
                raise OSError('connection reset')
            except OSError as inner:
                raise RuntimeError('bulk load failed') from inner
        except RuntimeError as e:
            text = format_error_chain(e)

        assert text == 'RuntimeError: bulk load failed <- OSError: connection reset'

    def test_single_exception(self):
        assert format_error_chain(ValueError('bad')) == 'ValueError: bad'
