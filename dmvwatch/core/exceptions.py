"""
Custom exceptions for DMV Watch
"""

from typing import Optional, Any


class DmvWatchError(Exception):
    """Base exception for all application errors"""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigError(DmvWatchError):
    """Invalid settings or catalog entry (fatal at startup)"""
    pass


class DuplicateIdError(ConfigError):
    """Two catalog entries share the same id"""

    def __init__(self, query_id: str):
        super().__init__(f"Duplicate diagnostic query id: '{query_id}'", {"query_id": query_id})
        self.query_id = query_id


# =============================================================================
# Lookup Errors
# =============================================================================


class NotFoundError(DmvWatchError):
    """Requested item does not exist"""
    pass


class UnknownQueryError(NotFoundError):
    """Query id is not part of the catalog"""

    def __init__(self, query_id: str):
        super().__init__(f"Unknown diagnostic query id: '{query_id}'", {"query_id": query_id})
        self.query_id = query_id


class NoResultsError(NotFoundError):
    """No stored run results for a query id"""

    def __init__(self, query_id: str, **kwargs):
        super().__init__(f"No stored results for query '{query_id}'", {"query_id": query_id, **kwargs})
        self.query_id = query_id


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(DmvWatchError):
    """Base database error"""
    pass


class ConnectionError(DatabaseError):
    """Database connection failed"""

    def __init__(self, message: str, server: Optional[str] = None,
                 database: Optional[str] = None, **kwargs):
        details = {"server": server, "database": database, **kwargs}
        super().__init__(message, details)


class ExecutionError(DatabaseError):
    """Database rejected or failed a diagnostic query"""

    def __init__(self, message: str, query_id: Optional[str] = None, **kwargs):
        details = {"query_id": query_id, **kwargs}
        super().__init__(message, details)
        self.query_id = query_id


class QueryTimeoutError(ExecutionError, TimeoutError):
    """Diagnostic query exceeded its deadline"""

    def __init__(self, query_id: str, timeout_seconds: float):
        message = f"Query '{query_id}' timed out after {timeout_seconds:g}s"
        super().__init__(message, query_id=query_id, timeout_seconds=timeout_seconds)
        self.timeout_seconds = timeout_seconds


# =============================================================================
# Storage / Analysis Errors
# =============================================================================


class StorageError(DmvWatchError):
    """Result store could not persist or read a run"""
    pass


class ComparisonError(DmvWatchError):
    """Two runs cannot be compared"""
    pass
