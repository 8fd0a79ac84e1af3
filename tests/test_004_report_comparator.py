import pytest

from dmvwatch.core.exceptions import ComparisonError, NoResultsError, UnknownQueryError
from dmvwatch.services.query_catalog import QueryCatalog
from dmvwatch.services.report_comparator import (
    ReportComparator,
    metric_value,
    normalize_identity,
    report,
)


def _cpu_run(run_at, value, minutes, text="select * from orders"):
    return run_at("top-cpu", [{"statement_text": text, "cpu_time": value}], minutes=minutes)


def test_forty_percent_increase_is_flagged(run_at):
    comparator = ReportComparator(threshold=0.2, catalog=QueryCatalog.default())
    records = comparator.regressions(_cpu_run(run_at, 100, 0), _cpu_run(run_at, 140, 5))

    assert len(records) == 1
    record = records[0]
    assert record.exceeds_threshold
    assert record.baseline_value == 100
    assert record.current_value == 140
    assert record.delta == 40
    assert record.relative_change == pytest.approx(0.4)
    assert record.change_percent == pytest.approx(40.0)
    assert record.metric == "cpu_time"


def test_ten_percent_increase_is_not_flagged(run_at):
    comparator = ReportComparator(threshold=0.2, catalog=QueryCatalog.default())
    baseline, current = _cpu_run(run_at, 100, 0), _cpu_run(run_at, 110, 5)

    assert comparator.regressions(baseline, current) == []
    records = list(comparator.compare(baseline, current))
    assert len(records) == 1
    assert not records[0].exceeds_threshold


def test_rows_align_on_normalized_statement_text(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    baseline = _cpu_run(run_at, 100, 0, text="SELECT *\n  FROM orders")
    current = _cpu_run(run_at, 200, 5, text="select * from   orders")

    records = list(comparator.compare(baseline, current))

    assert len(records) == 1
    assert records[0].identity == normalize_identity("select * from orders")[0]
    assert records[0].label == "select * from   orders".replace("   ", " ")


def test_unmatched_rows_are_ignored(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    baseline = run_at("top-cpu", [{"statement_text": "a", "cpu_time": 1}], minutes=0)
    current = run_at("top-cpu", [{"statement_text": "b", "cpu_time": 100}], minutes=5)
    assert list(comparator.compare(baseline, current)) == []


def test_first_duplicate_identity_wins(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    baseline = run_at("top-cpu", [
        {"statement_text": "a", "cpu_time": 100},
        {"statement_text": "a", "cpu_time": 1},
    ], minutes=0)
    current = run_at("top-cpu", [{"statement_text": "a", "cpu_time": 150}], minutes=5)

    records = list(comparator.compare(baseline, current))
    assert records[0].baseline_value == 100


def test_zero_baseline_has_no_relative_change(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    records = list(comparator.compare(_cpu_run(run_at, 0, 0), _cpu_run(run_at, 5, 5)))
    assert records[0].relative_change is None
    assert records[0].change_percent is None
    assert records[0].exceeds_threshold

    unchanged = list(comparator.compare(_cpu_run(run_at, 0, 0), _cpu_run(run_at, 0, 5)))
    assert not unchanged[0].exceeds_threshold


def test_non_numeric_metric_values_are_skipped(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    baseline = run_at("top-cpu", [{"statement_text": "a", "cpu_time": "n/a"}], minutes=0)
    current = run_at("top-cpu", [{"statement_text": "a", "cpu_time": 10}], minutes=5)
    assert list(comparator.compare(baseline, current)) == []


def test_explicit_columns_without_catalog(run_at):
    comparator = ReportComparator(threshold=0.5)
    baseline = run_at("waits", [{"wait_type": "PAGEIOLATCH_SH", "ms": 10}], minutes=0)
    current = run_at("waits", [{"wait_type": "PAGEIOLATCH_SH", "ms": 20}], minutes=5)

    records = comparator.regressions(baseline, current, metric="ms", identity_column="wait_type")
    assert len(records) == 1
    assert records[0].label == "PAGEIOLATCH_SH"


def test_mismatched_queries_cannot_be_compared(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    with pytest.raises(ComparisonError):
        list(comparator.compare(run_at("top-cpu", [], 0), run_at("top-io", [], 5)))


def test_baseline_must_not_be_newer(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    with pytest.raises(ComparisonError):
        list(comparator.compare(_cpu_run(run_at, 1, 10), _cpu_run(run_at, 1, 0)))


def test_query_without_identity_cannot_be_compared(run_at):
    comparator = ReportComparator(catalog=QueryCatalog.default())
    baseline = run_at("live-query-profiles", [{"row_count": 1}], minutes=0)
    current = run_at("live-query-profiles", [{"row_count": 2}], minutes=5)
    with pytest.raises(ComparisonError):
        list(comparator.compare(baseline, current))


def test_report_is_idempotent(store, run_at):
    catalog = QueryCatalog.default()
    store.append(_cpu_run(run_at, 100, 0))
    store.append(_cpu_run(run_at, 140, 5))

    first = report(store, catalog, "top-cpu")
    second = report(store, catalog, "top-cpu")

    assert first == second
    assert len(first) == 1


def test_report_since_reaches_older_runs(store, run_at):
    catalog = QueryCatalog.default()
    store.append(_cpu_run(run_at, 100, 0))
    store.append(_cpu_run(run_at, 135, 5))
    store.append(_cpu_run(run_at, 140, 10))

    assert report(store, catalog, "top-cpu", since=1) == []
    flagged = report(store, catalog, "top-cpu", since=2)
    assert flagged[0].baseline_value == 100
    assert len(report(store, catalog, "top-cpu", since=1, include_all=True)) == 1


def test_report_needs_enough_runs(store, run_at):
    store.append(_cpu_run(run_at, 100, 0))
    with pytest.raises(NoResultsError):
        report(store, QueryCatalog.default(), "top-cpu")


def test_report_unknown_query(store):
    with pytest.raises(UnknownQueryError):
        report(store, QueryCatalog.default(), "nope")


def test_metric_value_parsing():
    assert metric_value(3) == 3.0
    assert metric_value("2.5") == 2.5
    assert metric_value(True) is None
    assert metric_value(None) is None
    assert metric_value("abc") is None
