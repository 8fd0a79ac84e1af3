"""
Fixtures for the dmvwatch tests.

No live SQL Server is needed: connection sources are fakes that hand out
leases returning canned rows, raising errors or blocking until released.
Fixtures:
- isolated_home: points DMVWATCH_HOME at a temporary directory (autouse).
- make_source: builds a FakeSource.
- clock: manual monotonic clock for the scheduler.
- store: an open ResultStore in a temporary directory.
"""

import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from dmvwatch.core.config import reset_settings
from dmvwatch.database.connection import ConnectionLease
from dmvwatch.models.diagnostic_query import DiagnosticQuery
from dmvwatch.models.run_models import RunResult
from dmvwatch.services.query_catalog import QueryCatalog
from dmvwatch.services.result_store import ResultStore


class FakeLease(ConnectionLease):
    def __init__(self, source):
        self._source = source

    def fetch_all(self, sql, timeout=None):
        source = self._source
        source.statements.append(sql)
        source.started.set()
        if source.blocking:
            source.release.wait(5)
            if source.cancelled.is_set():
                raise RuntimeError("Operation cancelled")
        if source.error is not None:
            raise source.error
        if source.responses:
            return [dict(row) for row in source.responses.pop(0)]
        return [dict(row) for row in source.rows]

    def cancel(self):
        self._source.cancelled.set()
        self._source.release.set()


class FakeSource:
    """Stand-in for DatabaseConnection: only lease() and disconnect()"""

    def __init__(self, rows=None, error=None, blocking=False, responses=None):
        self.rows = rows or []
        self.responses = list(responses or [])
        self.error = error
        self.blocking = blocking
        self.started = threading.Event()
        self.release = threading.Event()
        self.cancelled = threading.Event()
        self.statements = []
        self.leased = 0
        self.returned = 0
        self.disconnected = False

    @contextmanager
    def lease(self):
        self.leased += 1
        try:
            yield FakeLease(self)
        finally:
            self.returned += 1

    def disconnect(self):
        self.disconnected = True


class ManualClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("DMVWATCH_"):
            monkeypatch.delenv(key, raising=False)
    home = tmp_path / "home"
    monkeypatch.setenv("DMVWATCH_HOME", str(home))
    reset_settings()
    yield home
    reset_settings()
    # CLI runs attach handlers to the stream captured for that test
    app_logger = logging.getLogger("dmvwatch")
    for handler in list(app_logger.handlers):
        app_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def make_source():
    return FakeSource


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(tmp_path):
    result_store = ResultStore(tmp_path / "results.jsonl").open()
    yield result_store
    result_store.close()


@pytest.fixture
def small_catalog():
    return QueryCatalog([
        DiagnosticQuery(id="top-io", sql="select 1", metric_column="Avg IO", identity_column="Sql"),
        DiagnosticQuery(id="top-cpu", sql="select 2", metric_column="cpu_time",
                        identity_column="statement_text"),
    ])


def make_run(query_id, rows, minutes=0, duration_ms=12.5):
    """RunResult at a fixed base time plus ``minutes``"""
    base = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    return RunResult(
        query_id=query_id,
        timestamp=base + timedelta(minutes=minutes),
        rows=rows,
        duration_ms=duration_ms,
    )


@pytest.fixture
def run_at():
    return make_run
