"""
Application constants and enumerations
"""

from enum import Enum
from typing import Final

# =============================================================================
# Application Info
# =============================================================================

APP_NAME: Final[str] = "DMV Watch"
APP_VERSION: Final[str] = "1.0.0"

# =============================================================================
# File Paths
# =============================================================================

CONFIG_FILE: Final[str] = "settings.json"
RESULTS_FILE: Final[str] = "results.jsonl"
PID_FILE: Final[str] = "scheduler.pid"
LOG_FILE: Final[str] = "dmvwatch.log"

# =============================================================================
# Database Constants
# =============================================================================

DEFAULT_QUERY_TIMEOUT: Final[int] = 30  # seconds
MAX_QUERY_TIMEOUT: Final[int] = 600  # seconds
DEFAULT_CONNECTION_TIMEOUT: Final[int] = 15  # seconds

# ODBC Driver preferences (newest to oldest)
ODBC_DRIVER_PREFERENCES: Final[list[str]] = [
    "ODBC Driver 18 for SQL Server",
    "ODBC Driver 17 for SQL Server",
    "ODBC Driver 13 for SQL Server",
    "SQL Server Native Client 11.0",
    "SQL Server",
]

# =============================================================================
# Scheduler / Comparator Defaults
# =============================================================================

DEFAULT_MAX_IN_FLIGHT: Final[int] = 1
DEFAULT_POLL_INTERVAL: Final[float] = 1.0  # seconds
DEFAULT_RUN_INTERVAL: Final[int] = 300  # seconds
DEFAULT_REGRESSION_THRESHOLD: Final[float] = 0.20  # 20% increase
EVENT_HISTORY_SIZE: Final[int] = 500

# =============================================================================
# Exit Codes
# =============================================================================

EXIT_OK: Final[int] = 0
EXIT_EXECUTION_ERROR: Final[int] = 1
EXIT_CONFIG_ERROR: Final[int] = 2

# =============================================================================
# Enumerations
# =============================================================================


class SortDirection(str, Enum):
    """Ordering of the target metric in a diagnostic query"""
    DESC = "desc"
    ASC = "asc"


class RiskFlag(str, Enum):
    """Cost a diagnostic query imposes on the monitored server"""
    RECOMPILE = "recompile"         # OPTION (RECOMPILE), plan compiled each run
    LARGE_SCAN = "large_scan"       # Scans the whole plan cache
    PLAN_XML = "plan_xml"           # Pulls showplan XML for every row
    LIVE_PROFILE = "live_profile"   # Needs actual-plan capture to return rows


class QueryState(str, Enum):
    """Scheduling state of a single catalog entry"""
    IDLE = "idle"
    RUNNING = "running"


class RunOutcome(str, Enum):
    """Per-cycle result recorded by the scheduler"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
