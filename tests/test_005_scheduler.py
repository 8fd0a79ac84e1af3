import pytest

from dmvwatch.core.constants import QueryState, RunOutcome
from dmvwatch.core.exceptions import ConfigError, QueryTimeoutError, UnknownQueryError
from dmvwatch.services.executor import QueryExecutor
from dmvwatch.services.scheduler import DiagnosticScheduler


def _scheduler(catalog, source, store, clock, intervals, **kwargs):
    executor = QueryExecutor(source, default_timeout=5)
    return DiagnosticScheduler(catalog, executor, store, intervals, clock=clock, **kwargs)


def _outcomes(scheduler, query_id):
    return [event.outcome for event in scheduler.events() if event.query_id == query_id]


def test_overlapping_trigger_is_skipped(small_catalog, make_source, store, clock):
    source = make_source(blocking=True, rows=[{"Sql": "a", "Avg IO": 1}])
    scheduler = _scheduler(small_catalog, source, store, clock, {"top-io": 60})
    try:
        # t=0: first run starts and takes 90s
        assert scheduler.tick(0) == ["top-io"]
        assert source.started.wait(2)
        assert scheduler.state("top-io") == QueryState.RUNNING

        # t=60: still running, trigger dropped
        assert scheduler.tick(60) == []
        assert _outcomes(scheduler, "top-io") == [RunOutcome.SKIPPED]

        # t=90: run completes
        clock.now = 90
        source.release.set()
        assert scheduler.wait_until_idle(5)
        assert scheduler.state("top-io") == QueryState.IDLE
        assert _outcomes(scheduler, "top-io") == [RunOutcome.SKIPPED, RunOutcome.SUCCEEDED]
        assert store.count("top-io") == 1

        # t=120: next trigger runs normally
        assert scheduler.tick(100) == []
        assert scheduler.tick(120) == ["top-io"]
        assert scheduler.wait_until_idle(5)
        assert store.count("top-io") == 2
    finally:
        source.release.set()
        scheduler.stop()


def test_cap_keeps_other_queries_due(small_catalog, make_source, store, clock):
    source = make_source(blocking=True)
    scheduler = _scheduler(small_catalog, source, store, clock,
                           {"top-io": 60, "top-cpu": 60}, max_in_flight=1)
    try:
        assert scheduler.tick(0) == ["top-io"]
        assert scheduler.in_flight == 1
        # top-cpu is due but waits for the single slot; it is not skipped
        assert scheduler.tick(10) == []
        assert scheduler.state("top-cpu") == QueryState.IDLE
        assert _outcomes(scheduler, "top-cpu") == []

        source.release.set()
        assert scheduler.wait_until_idle(5)
        assert scheduler.tick(20) == ["top-cpu"]
        assert scheduler.wait_until_idle(5)

        outcomes = [event.outcome for event in scheduler.events()]
        assert RunOutcome.SKIPPED not in outcomes
        assert outcomes.count(RunOutcome.SUCCEEDED) == 2
    finally:
        source.release.set()
        scheduler.stop()


def test_missed_intervals_collapse(small_catalog, make_source, store, clock):
    scheduler = _scheduler(small_catalog, make_source(), store, clock, {"top-io": 60})
    try:
        assert scheduler.tick(0) == ["top-io"]
        assert scheduler.wait_until_idle(5)
        # Five intervals later: one run, not five
        assert scheduler.tick(300) == ["top-io"]
        assert scheduler.wait_until_idle(5)
        assert scheduler.tick(330) == []
        assert store.count("top-io") == 2
    finally:
        scheduler.stop()


def test_timeout_leaves_query_idle_and_store_empty(small_catalog, make_source, store, clock):
    source = make_source(blocking=True)
    scheduler = _scheduler(small_catalog, source, store, clock, {"top-io": 60}, timeout=0.2)
    try:
        scheduler.tick(0)
        assert scheduler.wait_until_idle(5)

        assert scheduler.state("top-io") == QueryState.IDLE
        assert store.count("top-io") == 0
        events = scheduler.events()
        assert events[-1].outcome == RunOutcome.FAILED
        assert "timed out" in events[-1].detail
    finally:
        source.release.set()
        scheduler.stop()


def test_failure_is_isolated_per_query(small_catalog, make_source, store, clock):
    source = make_source(error=RuntimeError("permission denied"))
    scheduler = _scheduler(small_catalog, source, store, clock,
                           {"top-io": 60, "top-cpu": 60}, max_in_flight=2)
    try:
        assert sorted(scheduler.tick(0)) == ["top-cpu", "top-io"]
        assert scheduler.wait_until_idle(5)
        assert _outcomes(scheduler, "top-io") == [RunOutcome.FAILED]
        assert _outcomes(scheduler, "top-cpu") == [RunOutcome.FAILED]
        # Still scheduling after failures
        assert sorted(scheduler.tick(60)) == ["top-cpu", "top-io"]
        assert scheduler.wait_until_idle(5)
    finally:
        scheduler.stop()


def test_run_now_stores_result(small_catalog, make_source, store, clock):
    source = make_source(rows=[{"statement_text": "x", "cpu_time": 5}])
    scheduler = _scheduler(small_catalog, source, store, clock, {})
    try:
        result = scheduler.run_now("top-cpu")
        assert result.row_count == 1
        assert store.count("top-cpu") == 1
        assert _outcomes(scheduler, "top-cpu") == [RunOutcome.SUCCEEDED]
    finally:
        scheduler.stop()


def test_run_now_propagates_timeout(small_catalog, make_source, store, clock):
    source = make_source(blocking=True)
    scheduler = _scheduler(small_catalog, source, store, clock, {})
    try:
        with pytest.raises(QueryTimeoutError):
            scheduler.run_now("top-io", timeout=0.1)
        assert scheduler.state("top-io") == QueryState.IDLE
        assert _outcomes(scheduler, "top-io") == [RunOutcome.FAILED]
        assert store.count("top-io") == 0
        assert scheduler.in_flight == 0
    finally:
        source.release.set()
        scheduler.stop()


def test_run_now_respects_in_flight_cap(small_catalog, make_source, store, clock):
    source = make_source(blocking=True)
    scheduler = _scheduler(small_catalog, source, store, clock, {"top-io": 60}, max_in_flight=1)
    try:
        assert scheduler.tick(0) == ["top-io"]
        assert source.started.wait(2)

        assert scheduler.run_now("top-cpu") is None
        assert _outcomes(scheduler, "top-cpu") == [RunOutcome.SKIPPED]
        assert scheduler.state("top-cpu") == QueryState.IDLE
        assert scheduler.in_flight == 1
        assert source.leased == 1
    finally:
        source.release.set()
        scheduler.stop()


def test_run_now_while_scheduled_run_in_progress_is_skipped(small_catalog, make_source, store, clock):
    source = make_source(blocking=True)
    scheduler = _scheduler(small_catalog, source, store, clock, {"top-io": 60}, max_in_flight=2)
    try:
        assert scheduler.tick(0) == ["top-io"]
        assert source.started.wait(2)

        assert scheduler.run_now("top-io") is None
        assert _outcomes(scheduler, "top-io") == [RunOutcome.SKIPPED]
        assert source.leased == 1
    finally:
        source.release.set()
        scheduler.stop()


def test_run_now_does_not_schedule_the_query(small_catalog, make_source, store, clock):
    source = make_source(rows=[{"statement_text": "x", "cpu_time": 5}])
    scheduler = _scheduler(small_catalog, source, store, clock, {"top-io": 60})
    try:
        scheduler.run_now("top-cpu")
        assert scheduler.scheduled_ids == ["top-io"]
        # Later ticks never trigger the ad hoc query
        assert scheduler.tick(0) == ["top-io"]
        assert scheduler.wait_until_idle(5)
        assert scheduler.tick(3600) == ["top-io"]
        assert scheduler.wait_until_idle(5)
        assert store.count("top-cpu") == 1
    finally:
        scheduler.stop()


def test_unknown_interval_id_is_rejected(small_catalog, make_source, store, clock):
    with pytest.raises(UnknownQueryError):
        _scheduler(small_catalog, make_source(), store, clock, {"nope": 60})


def test_invalid_cap_is_rejected(small_catalog, make_source, store, clock):
    with pytest.raises(ConfigError):
        _scheduler(small_catalog, make_source(), store, clock, {"top-io": 60}, max_in_flight=0)


def test_stopped_scheduler_dispatches_nothing(small_catalog, make_source, store, clock):
    scheduler = _scheduler(small_catalog, make_source(), store, clock, {"top-io": 60})
    scheduler.stop()
    assert scheduler.tick(0) == []


def test_background_loop_runs_due_queries(small_catalog, make_source, store):
    source = make_source(rows=[{"Sql": "a", "Avg IO": 1}])
    executor = QueryExecutor(source, default_timeout=5)
    scheduler = DiagnosticScheduler(small_catalog, executor, store, {"top-io": 3600},
                                     poll_interval=0.05)
    scheduler.start()
    try:
        assert source.started.wait(5)
        assert scheduler.wait_until_idle(5)
    finally:
        scheduler.stop()

    assert not scheduler.is_running
    assert store.count("top-io") == 1
