"""
Data models module
"""

from dmvwatch.models.diagnostic_query import DiagnosticQuery
from dmvwatch.models.run_models import RunResult, Regression, SchedulerEvent

__all__ = [
    "DiagnosticQuery",
    "RunResult",
    "Regression",
    "SchedulerEvent",
]
