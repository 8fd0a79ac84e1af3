"""
Diagnostic SQL texts
"""

from dmvwatch.database.queries.expensive_queries import ExpensiveQueries
from dmvwatch.database.queries.event_session_queries import (
    EventSessionQueries,
    EventSessionTemplate,
    SESSION_TEMPLATES,
)

__all__ = [
    "ExpensiveQueries",
    "EventSessionQueries",
    "EventSessionTemplate",
    "SESSION_TEMPLATES",
]
