"""
Diagnostic query executor

Runs one catalog entry against a leased connection under a deadline and
turns the rows into a RunResult. Connection pooling belongs to the
connection source, never to the executor.
"""

import time
from datetime import datetime, date, time as dtime, timezone
from decimal import Decimal
from threading import Event, Thread, Lock
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from dmvwatch.core.constants import DEFAULT_QUERY_TIMEOUT
from dmvwatch.core.exceptions import ExecutionError, QueryTimeoutError
from dmvwatch.core.logger import get_logger, run_context
from dmvwatch.database.connection import ConnectionLease
from dmvwatch.models.diagnostic_query import DiagnosticQuery
from dmvwatch.models.run_models import RunResult

logger = get_logger('services.executor')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_value(value: Any) -> Any:
    """Convert a driver value into something json.dumps accepts"""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        # query_hash, plan_handle and friends
        return "0x" + bytes(value).hex().upper()
    if isinstance(value, (datetime, date, dtime)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return str(value)


def normalize_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {str(column): normalize_value(value) for column, value in row.items()}
        for row in rows
    ]


class _CallState:
    """Hand-off between the waiting caller and the worker thread"""

    def __init__(self):
        self.done = Event()
        self.rows: Optional[List[Dict[str, Any]]] = None
        self.error: Optional[Exception] = None
        self._lease: Optional[ConnectionLease] = None
        self._abandoned = False
        self._lock = Lock()

    def attach(self, lease: ConnectionLease) -> bool:
        with self._lock:
            self._lease = lease
            return not self._abandoned

    def detach(self) -> None:
        with self._lock:
            self._lease = None

    def abandon(self) -> None:
        """Caller gave up: cancel the statement if it is still running"""
        with self._lock:
            self._abandoned = True
            lease = self._lease
        if lease is not None:
            lease.cancel()


class QueryExecutor:
    """
    Executes a single DiagnosticQuery with a per-call deadline

    ``connection_source`` is any object whose ``lease()`` is a context
    manager yielding a ConnectionLease (``DatabaseConnection`` in
    production). The statement runs on a daemon thread so a driver that
    ignores its own timeout cannot block the caller past the deadline.
    """

    def __init__(
        self,
        connection_source: Any,
        default_timeout: float = DEFAULT_QUERY_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ):
        if default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        self._source = connection_source
        self._default_timeout = float(default_timeout)
        self._clock = clock

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    def execute(self, query: DiagnosticQuery, timeout: Optional[float] = None) -> RunResult:
        """
        Run ``query`` and return its RunResult

        Args:
            query: Catalog entry to run
            timeout: Deadline in seconds (defaults to the executor default)

        Raises:
            QueryTimeoutError: Deadline exceeded; no RunResult is produced
            ExecutionError: The database rejected or failed the statement
        """
        deadline = float(timeout) if timeout is not None else self._default_timeout
        if deadline <= 0:
            raise ValueError("timeout must be positive")

        if query.is_risky:
            logger.debug(f"Running (risk: {', '.join(sorted(f.value for f in query.risk_flags))})",
                         extra=run_context(query.id))

        started_at = self._clock()
        state = _CallState()
        worker = Thread(
            target=self._run,
            args=(query, deadline, state),
            name=f"dmvwatch-exec-{query.id}",
            daemon=True,
        )
        start = time.perf_counter()
        worker.start()

        if not state.done.wait(deadline):
            state.abandon()
            logger.warning(f"Exceeded the {deadline:g}s deadline", extra=run_context(query.id))
            raise QueryTimeoutError(query.id, deadline)

        duration_ms = (time.perf_counter() - start) * 1000.0

        if state.error is not None:
            error = state.error
            if isinstance(error, TimeoutError):
                # Driver-side query timeout
                raise QueryTimeoutError(query.id, deadline) from error
            logger.error(f"Statement failed: {error}", extra=run_context(query.id))
            raise ExecutionError(f"Query '{query.id}' failed: {error}", query_id=query.id) from error

        rows = normalize_rows(state.rows or [])
        logger.info(f"Returned {len(rows)} rows in {duration_ms:.0f} ms", extra=run_context(query.id))
        return RunResult(
            query_id=query.id,
            timestamp=started_at,
            rows=rows,
            duration_ms=duration_ms,
        )

    def _run(self, query: DiagnosticQuery, deadline: float, state: _CallState) -> None:
        try:
            with self._source.lease() as lease:
                if not state.attach(lease):
                    return
                try:
                    state.rows = lease.fetch_all(query.sql, timeout=deadline)
                finally:
                    state.detach()
        except Exception as e:  # re-raised in the caller thread
            state.error = e
        finally:
            state.done.set()
