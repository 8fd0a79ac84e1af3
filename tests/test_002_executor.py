import time
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from dmvwatch.core.exceptions import DmvWatchError, ExecutionError, QueryTimeoutError
from dmvwatch.models.diagnostic_query import DiagnosticQuery
from dmvwatch.services.executor import QueryExecutor, normalize_value

QUERY = DiagnosticQuery(id="top-cpu", sql="select 2", metric_column="cpu_time",
                        identity_column="statement_text")


def test_execute_returns_run_result(make_source):
    source = make_source(rows=[{"statement_text": "select 1", "cpu_time": 100}])
    fixed = datetime(2024, 3, 1, tzinfo=timezone.utc)
    executor = QueryExecutor(source, default_timeout=5, clock=lambda: fixed)

    result = executor.execute(QUERY)

    assert result.query_id == "top-cpu"
    assert result.timestamp == fixed
    assert result.row_count == 1
    assert result.rows[0]["cpu_time"] == 100
    assert result.duration_ms >= 0
    assert source.statements == ["select 2"]
    assert source.leased == source.returned == 1


def test_rows_are_read_only(make_source):
    executor = QueryExecutor(make_source(rows=[{"a": 1}]), default_timeout=5)
    result = executor.execute(QUERY)
    with pytest.raises(TypeError):
        result.rows[0]["a"] = 2


def test_deadline_exceeded_raises_timeout_and_cancels(make_source):
    source = make_source(blocking=True)
    executor = QueryExecutor(source, default_timeout=5)

    started = time.perf_counter()
    with pytest.raises(QueryTimeoutError) as excinfo:
        executor.execute(QUERY, timeout=0.2)
    elapsed = time.perf_counter() - started

    assert elapsed < 2
    assert isinstance(excinfo.value, TimeoutError)
    assert isinstance(excinfo.value, DmvWatchError)
    assert excinfo.value.timeout_seconds == 0.2
    assert source.cancelled.wait(1)


def test_lease_is_returned_after_timeout(make_source):
    source = make_source(blocking=True)
    executor = QueryExecutor(source, default_timeout=5)
    with pytest.raises(QueryTimeoutError):
        executor.execute(QUERY, timeout=0.1)

    # The worker unwinds once cancel() releases the blocked statement
    deadline = time.monotonic() + 2
    while source.returned < 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert source.returned == source.leased == 1


def test_driver_timeout_becomes_query_timeout(make_source):
    executor = QueryExecutor(make_source(error=TimeoutError("HYT00 timeout expired")), default_timeout=5)
    with pytest.raises(QueryTimeoutError) as excinfo:
        executor.execute(QUERY)
    assert isinstance(excinfo.value.__cause__, TimeoutError)


def test_database_error_becomes_execution_error(make_source):
    cause = RuntimeError("Invalid object name 'sys.dm_nope'")
    executor = QueryExecutor(make_source(error=cause), default_timeout=5)

    with pytest.raises(ExecutionError) as excinfo:
        executor.execute(QUERY)

    assert "Invalid object name" in str(excinfo.value)
    assert excinfo.value.__cause__ is cause
    assert excinfo.value.query_id == "top-cpu"
    assert not isinstance(excinfo.value, QueryTimeoutError)


def test_values_are_normalized(make_source):
    row = {
        "query_hash": b"\x01\xab",
        "avg": Decimal("12.5"),
        "last_execution_time": datetime(2024, 3, 1, 8, 30),
        "id": UUID("12345678-1234-5678-1234-567812345678"),
        "name": "x",
        "missing": None,
    }
    result = QueryExecutor(make_source(rows=[row]), default_timeout=5).execute(QUERY)
    stored = result.rows[0]

    assert stored["query_hash"] == "0x01AB"
    assert stored["avg"] == 12.5
    assert stored["last_execution_time"] == "2024-03-01T08:30:00"
    assert stored["id"] == "12345678-1234-5678-1234-567812345678"
    assert stored["name"] == "x"
    assert stored["missing"] is None


def test_normalize_value_passes_plain_types():
    assert normalize_value(3) == 3
    assert normalize_value(True) is True
    assert normalize_value(1.5) == 1.5


def test_invalid_timeouts_are_rejected(make_source):
    with pytest.raises(ValueError):
        QueryExecutor(make_source(), default_timeout=0)
    executor = QueryExecutor(make_source(), default_timeout=5)
    with pytest.raises(ValueError):
        executor.execute(QUERY, timeout=-1)
