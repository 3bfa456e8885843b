"""
Tests for Smart Bulk Copy Configuration

These tests validate option bounds, safe-check parsing and the
configuration file and DAG param loaders.
"""

import json

import pytest

from smart_bulk_copy.config import (
    SAFE_CHECK_NONE,
    SAFE_CHECK_READ_ONLY,
    SAFE_CHECK_SNAPSHOT,
    SmartBulkCopyConfig,
    load_config_file,
    parse_safe_check,
)
from smart_bulk_copy.exceptions import ConfigurationError


def _config(**overrides):
    values = {
        'tables': ['dbo.Users'],
        'source_connection_string': 'DRIVER={x};SERVER=src',
        'destination_connection_string': 'DRIVER={x};SERVER=dst',
    }
    values.update(overrides)
    return SmartBulkCopyConfig(**values)


class TestSmartBulkCopyConfig:
    """Test configuration defaults and bounds."""

    def test_defaults(self):
        config = _config()

        assert config.batch_size == 100_000
        assert config.max_parallel_tasks == 7
        assert config.logical_partitions == 7
        assert config.truncate_tables is False
        assert config.safe_check == SAFE_CHECK_READ_ONLY
        assert config.on_transfer_error == 'continue'
        assert config.monitor_interval_seconds == 5.0

    @pytest.mark.parametrize('field_name,value', [
        ('batch_size', 999),
        ('batch_size', 100_000_001),
        ('max_parallel_tasks', 0),
        ('max_parallel_tasks', 33),
        ('logical_partitions', 0),
        ('logical_partitions', 33),
    ])
    def test_out_of_bounds_rejected(self, field_name, value):
        with pytest.raises(ConfigurationError):
            _config(**{field_name: value})

    @pytest.mark.parametrize('field_name,value', [
        ('batch_size', 1_000),
        ('batch_size', 100_000_000),
        ('max_parallel_tasks', 1),
        ('max_parallel_tasks', 32),
        ('logical_partitions', 1),
        ('logical_partitions', 32),
    ])
    def test_bounds_inclusive(self, field_name, value):
        assert getattr(_config(**{field_name: value}), field_name) == value

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            _config(max_parallel_tasks=100)

    def test_missing_source_rejected(self):
        with pytest.raises(ConfigurationError, match='source'):
            _config(source_connection_string=None)

    def test_missing_destination_rejected(self):
        with pytest.raises(ConfigurationError, match='destination'):
            _config(destination_connection_string=None)

    def test_empty_table_list_rejected(self):
        with pytest.raises(ConfigurationError):
            _config(tables=[])

    def test_invalid_table_rejected(self):
        with pytest.raises(ConfigurationError):
            _config(tables=['Users'])

    def test_unknown_transfer_error_policy_rejected(self):
        with pytest.raises(ConfigurationError):
            _config(on_transfer_error='retry')


class TestParseSafeCheck:
    """Test safe-check option values."""

    @pytest.mark.parametrize('value,expected', [
        ('none', SAFE_CHECK_NONE),
        ('read-only', SAFE_CHECK_READ_ONLY),
        ('ReadOnly', SAFE_CHECK_READ_ONLY),
        ('SNAPSHOT', SAFE_CHECK_SNAPSHOT),
        (None, SAFE_CHECK_READ_ONLY),
        ('', SAFE_CHECK_READ_ONLY),
    ])
    def test_valid_values(self, value, expected):
        assert parse_safe_check(value) == expected

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError, match='safe-check'):
            parse_safe_check('paranoid')


class TestLoadConfigFile:
    """Test the JSON configuration file loader."""

    def test_full_file(self, tmp_path):
        path = tmp_path / 'smartbulkcopy.config'
        path.write_text(json.dumps({
            'source': {'connection-string': 'SERVER=src;DATABASE=a'},
            'destination': {'conn-id': 'mssql_destination'},
            'tables': ['dbo.Users', '*'],
            'options': {
                'batch-size': 50000,
                'logical-partitions': 16,
                'tasks': 8,
                'truncate-tables': 'true',
                'safe-check': 'snapshot',
                'on-transfer-error': 'fail',
            },
        }))

        config = load_config_file(path)

        assert config.source_connection_string == 'SERVER=src;DATABASE=a'
        assert config.destination_conn_id == 'mssql_destination'
        assert config.tables == ['dbo.Users', '*']
        assert config.batch_size == 50000
        assert config.logical_partitions == 16
        assert config.max_parallel_tasks == 8
        assert config.truncate_tables is True
        assert config.safe_check == SAFE_CHECK_SNAPSHOT
        assert config.on_transfer_error == 'fail'

    def test_defaults_when_options_missing(self, tmp_path):
        path = tmp_path / 'smartbulkcopy.config'
        path.write_text(json.dumps({
            'source': {'connection-string': 'SERVER=src'},
            'destination': {'connection-string': 'SERVER=dst'},
            'tables': ['*'],
        }))

        config = load_config_file(path)

        assert config.max_parallel_tasks == 7
        assert config.logical_partitions == 7

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(tmp_path / 'missing.config')

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'smartbulkcopy.config'
        path.write_text('{not json')

        with pytest.raises(ConfigurationError):
            load_config_file(path)

    def test_out_of_bounds_option(self, tmp_path):
        path = tmp_path / 'smartbulkcopy.config'
        path.write_text(json.dumps({
            'source': {'connection-string': 'SERVER=src'},
            'destination': {'connection-string': 'SERVER=dst'},
            'tables': ['*'],
            'options': {'tasks': 64},
        }))

        with pytest.raises(ConfigurationError, match='max_parallel_tasks'):
            load_config_file(path)

    def test_non_numeric_option(self, tmp_path):
        path = tmp_path / 'smartbulkcopy.config'
        path.write_text(json.dumps({
            'source': {'connection-string': 'SERVER=src'},
            'destination': {'connection-string': 'SERVER=dst'},
            'tables': ['*'],
            'options': {'batch-size': 'lots'},
        }))

        with pytest.raises(ConfigurationError, match='batch-size'):
            load_config_file(path)


class TestFromParams:
    """Test configuration from Airflow DAG params."""

    def test_params(self):
        config = SmartBulkCopyConfig.from_params({
            'source_conn_id': 'mssql_source',
            'destination_conn_id': 'mssql_destination',
            'tables': 'dbo.A,dbo.B',
            'batch_size': 20000,
            'tasks': 4,
            'logical_partitions': 3,
            'truncate_tables': True,
            'safe_check': 'none',
            'on_transfer_error': 'abort',
        })

        assert config.tables == ['dbo.A', 'dbo.B']
        assert config.source_conn_id == 'mssql_source'
        assert config.max_parallel_tasks == 4
        assert config.logical_partitions == 3
        assert config.truncate_tables is True
        assert config.safe_check == SAFE_CHECK_NONE
        assert config.on_transfer_error == 'abort'

    def test_policy_is_case_insensitive(self):
        config = SmartBulkCopyConfig.from_params({
            'source_conn_id': 'mssql_source',
            'destination_conn_id': 'mssql_destination',
            'tables': ['*'],
            'on_transfer_error': 'ABORT',
        })

        assert config.on_transfer_error == 'abort'


class TestMonitorInterval:
    """Test the monitor-interval option."""

    def _write(self, tmp_path, interval):
        path = tmp_path / 'smartbulkcopy.config'
        path.write_text(json.dumps({
            'source': {'connection-string': 'SERVER=src'},
            'destination': {'connection-string': 'SERVER=dst'},
            'tables': ['*'],
            'options': {'monitor-interval': interval},
        }))
        return path

    def test_numeric_string_accepted(self, tmp_path):
        config = load_config_file(self._write(tmp_path, '2.5'))

        assert config.monitor_interval_seconds == 2.5

    def test_non_numeric_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError, match='monitor-interval'):
            load_config_file(self._write(tmp_path, 'soon'))

    def test_boolean_rejected(self, tmp_path):
        with pytest.raises(ConfigurationError, match='monitor-interval'):
            load_config_file(self._write(tmp_path, True))
