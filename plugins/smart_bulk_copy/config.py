"""
Smart Bulk Copy Configuration

Holds and validates the settings of a copy run. Settings come either from a
JSON configuration file (default: smartbulkcopy.config in the working
directory) or from Airflow DAG params.

Example configuration file:

    {
        "source": {"connection-string": "DRIVER={ODBC Driver 18 for SQL Server};SERVER=src;..."},
        "destination": {"conn-id": "mssql_destination"},
        "tables": ["dbo.Orders", "*"],
        "options": {
            "tasks": 7,
            "logical-partitions": 7,
            "batch-size": 100000,
            "truncate-tables": true,
            "safe-check": "read-only"
        }
    }
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import logging

from smart_bulk_copy.exceptions import ConfigurationError
from smart_bulk_copy.table_config import expand_tables_param, validate_tables

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = 'smartbulkcopy.config'

BATCH_SIZE_BOUNDS = (1_000, 100_000_000)
PARALLEL_TASKS_BOUNDS = (1, 32)
LOGICAL_PARTITIONS_BOUNDS = (1, 32)

SAFE_CHECK_NONE = 'none'
SAFE_CHECK_READ_ONLY = 'read-only'
SAFE_CHECK_SNAPSHOT = 'snapshot'
_SAFE_CHECK_ALIASES = {
    'none': SAFE_CHECK_NONE,
    'read-only': SAFE_CHECK_READ_ONLY,
    'readonly': SAFE_CHECK_READ_ONLY,
    'snapshot': SAFE_CHECK_SNAPSHOT,
}

# What to do when copying a partition fails
ON_ERROR_CONTINUE = 'continue'
ON_ERROR_FAIL = 'fail'
ON_ERROR_ABORT = 'abort'
TRANSFER_ERROR_POLICIES = (ON_ERROR_CONTINUE, ON_ERROR_FAIL, ON_ERROR_ABORT)


def _check_bounds(name: str, value: int, bounds) -> int:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if value < low:
        raise ConfigurationError(f"{name} cannot be less than {low}")
    if value > high:
        raise ConfigurationError(f"{name} cannot be greater than {high}")
    return value


def parse_safe_check(value: Optional[str]) -> str:
    """Normalize the safe-check option ('none', 'read-only'/'readonly', 'snapshot')."""
    if not value:
        return SAFE_CHECK_READ_ONLY
    normalized = _SAFE_CHECK_ALIASES.get(str(value).strip().lower())
    if normalized is None:
        raise ConfigurationError(
            "Option safe-check can only contain 'none', 'readonly' or 'snapshot' values."
        )
    return normalized


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    raise ConfigurationError(f"{name} must be true or false, got {value!r}")


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _parse_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


@dataclass
class SmartBulkCopyConfig:
    """Settings of one copy run."""

    tables: List[str] = field(default_factory=list)
    source_conn_id: Optional[str] = None
    source_connection_string: Optional[str] = None
    destination_conn_id: Optional[str] = None
    destination_connection_string: Optional[str] = None
    batch_size: int = 100_000
    max_parallel_tasks: int = 7
    logical_partitions: int = 7
    truncate_tables: bool = False
    safe_check: str = SAFE_CHECK_READ_ONLY
    keep_identity: bool = True
    on_transfer_error: str = ON_ERROR_CONTINUE
    monitor_interval_seconds: float = 5.0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check every setting against its bounds.

        Raises:
            ConfigurationError: On the first invalid setting
        """
        if not (self.source_conn_id or self.source_connection_string):
            raise ConfigurationError("A source connection id or connection string is required")
        if not (self.destination_conn_id or self.destination_connection_string):
            raise ConfigurationError(
                "A destination connection id or connection string is required"
            )

        try:
            validate_tables(self.tables)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        _check_bounds('batch_size', self.batch_size, BATCH_SIZE_BOUNDS)
        _check_bounds('max_parallel_tasks', self.max_parallel_tasks, PARALLEL_TASKS_BOUNDS)
        _check_bounds('logical_partitions', self.logical_partitions, LOGICAL_PARTITIONS_BOUNDS)

        self.safe_check = parse_safe_check(self.safe_check)

        if self.on_transfer_error not in TRANSFER_ERROR_POLICIES:
            raise ConfigurationError(
                f"on_transfer_error must be one of {', '.join(TRANSFER_ERROR_POLICIES)}, "
                f"got {self.on_transfer_error!r}"
            )
        if self.monitor_interval_seconds <= 0:
            raise ConfigurationError("monitor_interval_seconds must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SmartBulkCopyConfig":
        """
        Build a configuration from the JSON configuration file layout.

        Args:
            data: Parsed configuration document

        Returns:
            Validated configuration
        """
        source = data.get('source') or {}
        destination = data.get('destination') or {}
        options = data.get('options') or {}

        kwargs: Dict[str, Any] = {
            'tables': expand_tables_param(data.get('tables') or []),
            'source_conn_id': source.get('conn-id'),
            'source_connection_string': source.get('connection-string'),
            'destination_conn_id': destination.get('conn-id'),
            'destination_connection_string': destination.get('connection-string'),
            'safe_check': parse_safe_check(options.get('safe-check')),
        }

        if 'batch-size' in options:
            kwargs['batch_size'] = _parse_int('batch-size', options['batch-size'])
        if 'tasks' in options:
            kwargs['max_parallel_tasks'] = _parse_int('tasks', options['tasks'])
        if 'logical-partitions' in options:
            kwargs['logical_partitions'] = _parse_int(
                'logical-partitions', options['logical-partitions']
            )
        if 'truncate-tables' in options:
            kwargs['truncate_tables'] = _parse_bool('truncate-tables', options['truncate-tables'])
        if 'keep-identity' in options:
            kwargs['keep_identity'] = _parse_bool('keep-identity', options['keep-identity'])
        if 'on-transfer-error' in options:
            kwargs['on_transfer_error'] = str(options['on-transfer-error']).lower()
        if 'monitor-interval' in options:
            kwargs['monitor_interval_seconds'] = _parse_float(
                'monitor-interval', options['monitor-interval']
            )

        return cls(**kwargs)

    @classmethod
    def from_params(cls, params: Dict[str, Any]) -> "SmartBulkCopyConfig":
        """
        Build a configuration from Airflow DAG params.

        Args:
            params: DAG run params (see dags/smart_bulk_copy.py)

        Returns:
            Validated configuration
        """
        return cls(
            tables=expand_tables_param(params.get('tables', [])),
            source_conn_id=params.get('source_conn_id'),
            destination_conn_id=params.get('destination_conn_id'),
            batch_size=_parse_int('batch_size', params.get('batch_size', 100_000)),
            max_parallel_tasks=_parse_int('tasks', params.get('tasks', 7)),
            logical_partitions=_parse_int(
                'logical_partitions', params.get('logical_partitions', 7)
            ),
            truncate_tables=_parse_bool('truncate_tables', params.get('truncate_tables', False)),
            safe_check=parse_safe_check(params.get('safe_check')),
            keep_identity=_parse_bool('keep_identity', params.get('keep_identity', True)),
            on_transfer_error=str(params.get('on_transfer_error') or ON_ERROR_CONTINUE).lower(),
        )


def load_config_file(path: Union[str, Path] = DEFAULT_CONFIG_FILE) -> SmartBulkCopyConfig:
    """
    Load a configuration file.

    Args:
        path: Path of the JSON configuration file

    Returns:
        Validated configuration

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If the file is not valid JSON or a setting is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid configuration file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid configuration file {path}: expected a JSON object")

    logger.info(f"Loaded configuration from {path}")
    return SmartBulkCopyConfig.from_dict(data)
