"""
ODBC Connection Helper

This module wraps pyodbc for SQL Server connections. A helper is built either
from an Airflow connection id (resolved lazily through BaseHook, so Airflow is
only needed when connection ids are used) or from a raw ODBC connection string.

Every connection can be tagged with an ODBC application name so that the
sessions of each copy worker and of the log monitor are easy to tell apart
in sys.dm_exec_sessions.
"""

from typing import Any, List, Optional, Tuple
import logging
import os

import pyodbc

logger = logging.getLogger(__name__)

DEFAULT_ODBC_DRIVER = '{ODBC Driver 18 for SQL Server}'
CONNECT_TIMEOUT_SECONDS = 30


def _get_odbc_driver() -> str:
    """ODBC driver name, overridable with SMARTBULKCOPY_ODBC_DRIVER."""
    return os.environ.get('SMARTBULKCOPY_ODBC_DRIVER', DEFAULT_ODBC_DRIVER)


def _get_airflow_connection(conn_id: str):
    """Look up an Airflow connection by id."""
    from airflow.hooks.base import BaseHook

    return BaseHook.get_connection(conn_id)


class OdbcConnectionHelper:
    """
    Helper class for SQL Server ODBC connections.

    Provides get_records, get_first and run in the style of MsSqlHook, plus
    get_conn/probe used by the copy engine. Connections are never shared
    between threads; every call to get_conn() opens a new one.
    """

    def __init__(
        self,
        odbc_conn_id: Optional[str] = None,
        connection_string: Optional[str] = None,
    ):
        """
        Initialize the ODBC connection helper.

        Args:
            odbc_conn_id: Airflow connection ID for the database
            connection_string: Raw ODBC connection string (takes precedence)

        Raises:
            ValueError: If neither a connection id nor a connection string is given
        """
        if not odbc_conn_id and not connection_string:
            raise ValueError("Either odbc_conn_id or connection_string is required")
        self.conn_id = odbc_conn_id
        self._connection_string = connection_string
        self._conn_config = None

    def _get_connection_config(self) -> dict:
        """
        Get connection configuration from the Airflow connection.

        Returns:
            Dictionary with ODBC connection parameters
        """
        if self._conn_config is None:
            conn = _get_airflow_connection(self.conn_id)

            port = conn.port or 1433
            server = f"{conn.host},{port}" if port != 1433 else conn.host

            self._conn_config = {
                'DRIVER': _get_odbc_driver(),
                'SERVER': server,
                'DATABASE': conn.schema,
                'TrustServerCertificate': 'yes',
            }

            # Support both SQL Auth and Windows Auth
            if conn.login:
                self._conn_config['UID'] = conn.login
                self._conn_config['PWD'] = conn.password or ''
                self._conn_config['Trusted_Connection'] = 'no'
            else:
                self._conn_config['Trusted_Connection'] = 'yes'

        return self._conn_config

    def _build_connection_string(self, application_name: Optional[str] = None) -> str:
        """
        Build ODBC connection string.

        Args:
            application_name: Optional value for the APP keyword

        Returns:
            ODBC connection string
        """
        if self._connection_string:
            conn_str = self._connection_string.rstrip().rstrip(';')
        else:
            config = self._get_connection_config()
            conn_str = ';'.join([f"{k}={v}" for k, v in config.items() if v])

        if application_name:
            conn_str += f";APP={application_name}"
        return conn_str

    @property
    def data_source(self) -> str:
        """Server the helper points at, for log messages (no credentials)."""
        if self._connection_string:
            for part in self._connection_string.split(';'):
                key, _, value = part.partition('=')
                if key.strip().lower() in ('server', 'data source', 'address', 'addr'):
                    return value.strip()
            return '<connection string>'
        return self._get_connection_config().get('SERVER') or self.conn_id

    def get_conn(self, application_name: Optional[str] = None) -> pyodbc.Connection:
        """
        Open a new pyodbc connection to the database.

        Args:
            application_name: Optional ODBC application name for the session

        Returns:
            pyodbc Connection object
        """
        conn_str = self._build_connection_string(application_name)
        return pyodbc.connect(conn_str, timeout=CONNECT_TIMEOUT_SECONDS)

    def release_conn(self, conn: Optional[pyodbc.Connection]) -> None:
        """Close a connection, ignoring None."""
        if conn is None:
            return
        conn.close()

    def probe(self) -> bool:
        """
        Check that a connection can be opened.

        Returns:
            True if the database is reachable
        """
        logger.debug(f"Testing connection to: {self.data_source}...")
        conn = None
        try:
            conn = self.get_conn()
            logger.debug(f"Connection to {self.data_source} succeeded.")
            return True
        except Exception as e:
            logger.info(f"Error while opening connection to {self.data_source}: {e}")
            return False
        finally:
            self.release_conn(conn)

    def get_records(
        self,
        sql: str,
        parameters: Optional[List[Any]] = None
    ) -> List[Tuple[Any, ...]]:
        """
        Execute a query and return all rows as a list of tuples.

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query

        Returns:
            List of tuples, one per row
        """
        conn = None
        try:
            conn = self.get_conn()
            cursor = conn.cursor()

            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)

            return cursor.fetchall()
        except Exception as e:
            logger.error(f"Error executing query: {e}")
            logger.error(f"Query: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            raise
        finally:
            self.release_conn(conn)

    def get_first(
        self,
        sql: str,
        parameters: Optional[List[Any]] = None
    ) -> Optional[Tuple[Any, ...]]:
        """
        Execute a query and return the first row as a tuple.

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query

        Returns:
            First row as a tuple, or None if no rows
        """
        conn = None
        try:
            conn = self.get_conn()
            cursor = conn.cursor()

            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)

            return cursor.fetchone()
        except Exception as e:
            logger.error(f"Error executing query: {e}")
            logger.error(f"Query: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            raise
        finally:
            self.release_conn(conn)

    def run(
        self,
        sql: str,
        parameters: Optional[List[Any]] = None,
        autocommit: bool = False
    ) -> None:
        """
        Execute a SQL statement (typically DDL or DML).

        Args:
            sql: SQL statement to execute
            parameters: Optional list of parameters for the query
            autocommit: Whether to commit automatically
        """
        conn = None
        try:
            conn = self.get_conn()
            if autocommit:
                conn.autocommit = True

            cursor = conn.cursor()

            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)

            if not autocommit:
                conn.commit()
        except Exception as e:
            logger.error(f"Error executing statement: {e}")
            logger.error(f"SQL: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            if conn and not autocommit:
                conn.rollback()
            raise
        finally:
            self.release_conn(conn)

