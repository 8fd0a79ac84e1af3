"""
Database connection management for SQL Server
"""

import math
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Optional, List, Dict, Any, Iterator

import pyodbc
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Connection, URL
from sqlalchemy.pool import QueuePool

from dmvwatch.core.config import DatabaseSettings
from dmvwatch.core.constants import ODBC_DRIVER_PREFERENCES
from dmvwatch.core.logger import get_logger
from dmvwatch.core.exceptions import (
    ConnectionError,
    ExecutionError,
)

logger = get_logger('database.connection')

# SQLSTATE raised by the ODBC driver when the query timeout expires
_TIMEOUT_SQLSTATES = ("HYT00", "HYT01")


def get_available_odbc_drivers() -> List[str]:
    """Get list of available SQL Server ODBC drivers"""
    try:
        drivers = pyodbc.drivers()
        return [d for d in drivers if 'SQL Server' in d]
    except pyodbc.Error as e:
        logger.error(f"Failed to get ODBC drivers: {e}")
        return []


def get_best_odbc_driver() -> Optional[str]:
    """Get the best available ODBC driver"""
    available = get_available_odbc_drivers()

    for preferred in ODBC_DRIVER_PREFERENCES:
        if preferred in available:
            return preferred

    # Return first available if no preferred found
    return available[0] if available else None


def build_connection_string(settings: DatabaseSettings, driver: Optional[str] = None) -> str:
    """Build the ODBC connection string (password included)"""
    driver = driver or settings.driver or get_best_odbc_driver()
    if not driver:
        raise ConnectionError("No SQL Server ODBC driver found",
                              server=settings.server, database=settings.database)

    server = settings.server
    if "\\" in server:
        # Named instance: the browser service resolves the port
        server_value = server if settings.port == 1433 else f"{server},{settings.port}"
    else:
        server_value = f"{server},{settings.port}"

    parts = [
        f"DRIVER={{{driver}}}",
        f"SERVER={server_value}",
        f"DATABASE={settings.database}",
        f"APP={{{settings.application_name}}}",
        f"Connect Timeout={settings.connection_timeout}",
    ]

    if settings.trusted_connection:
        parts.append("Trusted_Connection=yes")
    else:
        if not settings.username:
            raise ConnectionError("No username configured for SQL Server authentication",
                                  server=settings.server, database=settings.database)
        parts.append(f"UID={settings.username}")
        parts.append(f"PWD={{{settings.password}}}")

    parts.append(f"Encrypt={'yes' if settings.encrypt else 'no'}")
    if settings.trust_server_certificate:
        parts.append("TrustServerCertificate=yes")

    return ";".join(parts)


def is_timeout_error(exc: BaseException) -> bool:
    """True when a driver error is the ODBC query timeout"""
    args = getattr(exc, "args", ())
    if args and isinstance(args[0], str) and args[0] in _TIMEOUT_SQLSTATES:
        return True
    return "timeout expired" in str(exc).lower()


@dataclass
class ConnectionInfo:
    """Connection metadata"""
    server_version: str = ""
    product_version: str = ""
    server_name: str = ""
    database_name: str = ""
    edition: str = ""
    is_azure: bool = False
    major_version: int = 0
    connected_at: Optional[datetime] = None


class ConnectionLease(ABC):
    """
    A connection borrowed for the duration of one diagnostic call

    Returned by a connection source's ``lease()`` context manager. The
    source owns pooling and releases the connection when the context exits.
    """

    @abstractmethod
    def fetch_all(self, sql: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Run one statement and return its first result set as dicts"""

    def cancel(self) -> None:
        """Ask the server to abandon the running statement (best effort)"""


class LeasedConnection(ConnectionLease):
    """Lease over a pooled SQLAlchemy connection, using the raw pyodbc cursor"""

    def __init__(self, connection: Connection):
        self._connection = connection
        self._cursor = None
        self._lock = Lock()

    def fetch_all(self, sql: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        raw_conn = self._connection.connection.driver_connection
        # pyodbc applies the connection timeout to cursors created afterwards
        raw_conn.timeout = int(math.ceil(timeout)) if timeout else 0

        cursor = raw_conn.cursor()
        with self._lock:
            self._cursor = cursor
        try:
            cursor.execute("SET NOCOUNT ON")
            cursor.execute(sql)

            # Advance to the first result set that returns rows
            while cursor.description is None and cursor.nextset():
                pass

            if cursor.description is None:
                return []
            columns = [col[0] for col in cursor.description]
            return [dict(zip(columns, row)) for row in cursor.fetchall()]
        except pyodbc.Error as e:
            if is_timeout_error(e):
                raise TimeoutError(str(e)) from e
            raise
        finally:
            with self._lock:
                self._cursor = None
            cursor.close()

    def cancel(self) -> None:
        with self._lock:
            cursor = self._cursor
        if cursor is None:
            return
        try:
            cursor.cancel()
        except pyodbc.Error as e:
            logger.warning(f"Statement cancel failed: {e}")


class DatabaseConnection:
    """
    SQL Server connection source

    Owns the SQLAlchemy engine (and its pool). Diagnostic calls borrow a
    connection through ``lease()``; everything else goes through the
    ``execute_*`` helpers.
    """

    def __init__(self, settings: DatabaseSettings):
        self.settings = settings
        self._engine: Optional[Engine] = None
        self._info: Optional[ConnectionInfo] = None
        self._last_error: Optional[str] = None
        # Serializes engine creation and disposal across worker threads
        self._lock = Lock()

    @property
    def info(self) -> Optional[ConnectionInfo]:
        return self._info

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def connect(self) -> bool:
        """
        Create the engine and verify the server answers

        Raises:
            ConnectionError: If the driver or server rejects the connection
        """
        if self.is_connected:
            return True

        with self._lock:
            # Another worker may have connected while this one waited
            if self.is_connected:
                return True

            self._last_error = None
            connection_string = build_connection_string(self.settings)
            engine = create_engine(
                URL.create("mssql+pyodbc", query={"odbc_connect": connection_string}),
                poolclass=QueuePool,
                pool_size=self.settings.max_pool_size,
                pool_recycle=self.settings.pool_recycle,
                pool_pre_ping=True,
                echo=self.settings.echo_sql,
            )

            try:
                self._info = self._fetch_server_info(engine)
            except Exception as e:
                engine.dispose()
                self._last_error = f"Connection failed: {e}"
                logger.error(self._last_error)
                raise ConnectionError(self._last_error, server=self.settings.server,
                                      database=self.settings.database) from e

            self._engine = engine
        logger.info(
            f"Connected to {self.settings.server}/{self.settings.database} "
            f"({self._info.product_version} {self._info.edition})"
        )
        return True

    @staticmethod
    def _fetch_server_info(engine: Engine) -> ConnectionInfo:
        """Fetch server version and metadata"""
        # Cast to standard types to avoid "ODBC SQL type -16" errors with some drivers
        query = """
        SELECT
            CAST(@@VERSION AS NVARCHAR(MAX)) AS FullVersion,
            CAST(@@SERVERNAME AS NVARCHAR(255)) AS ServerName,
            CAST(DB_NAME() AS NVARCHAR(128)) AS DatabaseName,
            CAST(SERVERPROPERTY('ProductVersion') AS NVARCHAR(128)) AS ProductVersion,
            CAST(SERVERPROPERTY('ProductMajorVersion') AS INT) AS MajorVersion,
            CAST(SERVERPROPERTY('Edition') AS NVARCHAR(128)) AS Edition,
            CAST(SERVERPROPERTY('EngineEdition') AS INT) AS EngineEdition
        """
        with engine.connect() as conn:
            result = conn.execute(text(query)).fetchone()

        engine_edition = result[6]
        return ConnectionInfo(
            server_version=result[0],
            server_name=result[1],
            database_name=result[2],
            product_version=result[3],
            major_version=int(result[4]) if result[4] else 0,
            edition=result[5],
            is_azure=engine_edition in (5, 6, 8),  # Azure SQL Database, Azure SQL DW, Azure SQL MI
            connected_at=datetime.now(),
        )

    def disconnect(self) -> None:
        """Dispose the engine and its pooled connections"""
        with self._lock:
            if self._engine:
                self._engine.dispose()
                self._engine = None
                logger.info(f"Disconnected from {self.settings.server}")
            self._info = None

    @contextmanager
    def lease(self) -> Iterator[LeasedConnection]:
        """Borrow a pooled connection; returned to the pool on every exit path"""
        self.connect()
        engine = self._engine
        if engine is None:
            raise ConnectionError("Disconnected while leasing", server=self.settings.server,
                                  database=self.settings.database)
        with engine.connect() as conn:
            yield LeasedConnection(conn)

    def execute_query(
        self,
        query: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute a parameterized SQL query and return results

        Raises:
            ExecutionError: If the query fails
        """
        self.connect()
        try:
            with self._engine.connect() as conn:
                result = conn.execute(text(query), params or {})
                if result.returns_rows:
                    columns = list(result.keys())
                    return [dict(zip(columns, row)) for row in result.fetchall()]
                return []
        except Exception as e:
            raise ExecutionError(f"Query execution error: {e}", statement=query[:500]) from e

    def execute_scalar(self, query: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Execute query and return single value"""
        results = self.execute_query(query, params)
        if results and results[0]:
            return list(results[0].values())[0]
        return None

    def execute_non_query(self, query: str) -> None:
        """
        Execute server-level DDL (event sessions) outside a transaction

        Note: only used for tracing sessions, never for user data.
        """
        self.connect()
        try:
            with self._engine.connect() as conn:
                conn.execution_options(isolation_level="AUTOCOMMIT").execute(text(query))
        except Exception as e:
            raise ExecutionError(f"Non-query execution error: {e}", statement=query[:500]) from e

    def test_connection(self) -> bool:
        """Test if connection is still alive"""
        if not self._engine:
            return False
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Connection test failed: {e}")
            return False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False
