"""
Services module - catalog, execution, scheduling, storage and comparison
"""

from dmvwatch.services.query_catalog import QueryCatalog
from dmvwatch.services.executor import QueryExecutor, normalize_rows, normalize_value
from dmvwatch.services.result_store import ResultStore
from dmvwatch.services.scheduler import DiagnosticScheduler
from dmvwatch.services.report_comparator import ReportComparator, report
from dmvwatch.services.event_session_service import EventSessionService, get_template

__all__ = [
    "QueryCatalog",
    "QueryExecutor",
    "normalize_rows",
    "normalize_value",
    "ResultStore",
    "DiagnosticScheduler",
    "ReportComparator",
    "report",
    "EventSessionService",
    "get_template",
]
