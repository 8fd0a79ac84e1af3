"""
Database module - SQL Server connection and diagnostic SQL texts
"""

from dmvwatch.database.connection import (
    DatabaseConnection,
    ConnectionLease,
    LeasedConnection,
    ConnectionInfo,
    build_connection_string,
    get_available_odbc_drivers,
    get_best_odbc_driver,
)
from dmvwatch.database.queries import ExpensiveQueries, EventSessionQueries

__all__ = [
    "DatabaseConnection",
    "ConnectionLease",
    "LeasedConnection",
    "ConnectionInfo",
    "build_connection_string",
    "get_available_odbc_drivers",
    "get_best_odbc_driver",
    "ExpensiveQueries",
    "EventSessionQueries",
]
