"""
Run-to-run regression detection

Aligns the rows of two RunResults of the same query on the catalog
entry's identity column and reports how the metric column moved.
"""

import hashlib
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from dmvwatch.core.constants import DEFAULT_REGRESSION_THRESHOLD
from dmvwatch.core.exceptions import ComparisonError, NoResultsError
from dmvwatch.core.logger import get_logger
from dmvwatch.models.run_models import Regression, RunResult
from dmvwatch.services.query_catalog import QueryCatalog
from dmvwatch.services.result_store import ResultStore

logger = get_logger('services.report_comparator')

_WHITESPACE = re.compile(r"\s+")
_LABEL_LENGTH = 80


def normalize_identity(value: Any) -> Tuple[str, str]:
    """
    Stable alignment key for an identity cell

    Statement text differs between runs only in whitespace and case, so
    text is collapsed, case folded and hashed. Returns (key, label).
    """
    if isinstance(value, str):
        text = _WHITESPACE.sub(" ", value).strip()
        key = hashlib.sha1(text.casefold().encode("utf-8")).hexdigest()
        label = text if len(text) <= _LABEL_LENGTH else text[:_LABEL_LENGTH - 3] + "..."
        return key, label
    return str(value), str(value)


def metric_value(value: Any) -> Optional[float]:
    """Numeric value of a metric cell, None when it is not a number"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class ReportComparator:
    """
    Compares two runs of one diagnostic query

    Usage:
        comparator = ReportComparator(threshold=0.2, catalog=catalog)
        for regression in comparator.regressions(previous, latest):
            print(regression.identity, regression.change_percent)
    """

    def __init__(self, threshold: float = DEFAULT_REGRESSION_THRESHOLD,
                 catalog: Optional[QueryCatalog] = None):
        if threshold < 0:
            raise ValueError("threshold must not be negative")
        self.threshold = float(threshold)
        self._catalog = catalog

    def _columns(self, query_id: str, metric: Optional[str],
                 identity_column: Optional[str]) -> Tuple[str, str]:
        if (metric is None or identity_column is None) and self._catalog is not None \
                and query_id in self._catalog:
            query = self._catalog.get(query_id)
            metric = metric or query.metric_column
            identity_column = identity_column or query.identity_column

        if not metric or not identity_column:
            raise ComparisonError(
                f"Query '{query_id}' has no metric/identity column to compare on",
                {"query_id": query_id, "metric": metric, "identity_column": identity_column},
            )
        return metric, identity_column

    def _index(self, run: RunResult, metric: str, identity_column: str) -> Dict[str, Tuple[str, float]]:
        indexed: Dict[str, Tuple[str, float]] = {}
        for row in run.rows:
            if identity_column not in row:
                continue
            value = metric_value(row.get(metric))
            if value is None:
                continue
            key, label = normalize_identity(row[identity_column])
            # First occurrence wins
            indexed.setdefault(key, (label, value))
        return indexed

    def compare(
        self,
        baseline: RunResult,
        current: RunResult,
        metric: Optional[str] = None,
        identity_column: Optional[str] = None,
    ) -> Iterator[Regression]:
        """
        Yield one Regression per identity present in both runs

        Rows are yielded in the current run's order. Nothing is cached;
        calling twice on the same pair yields equal records.

        Raises:
            ComparisonError: Different query ids, baseline newer than current,
                or no metric/identity column known for the query
        """
        if baseline.query_id != current.query_id:
            raise ComparisonError(
                "Cannot compare runs of different queries",
                {"baseline": baseline.query_id, "current": current.query_id},
            )
        if baseline.timestamp > current.timestamp:
            raise ComparisonError(
                "Baseline run is newer than the current run",
                {"query_id": current.query_id},
            )

        metric, identity_column = self._columns(current.query_id, metric, identity_column)
        previous = self._index(baseline, metric, identity_column)
        latest = self._index(current, metric, identity_column)

        for key, (label, current_value) in latest.items():
            if key not in previous:
                continue
            baseline_value = previous[key][1]
            delta = current_value - baseline_value

            if baseline_value == 0:
                relative_change = None
                exceeds = current_value > 0
            else:
                relative_change = delta / baseline_value
                exceeds = relative_change > self.threshold

            yield Regression(
                query_id=current.query_id,
                baseline_timestamp=baseline.timestamp,
                current_timestamp=current.timestamp,
                metric=metric,
                identity=key,
                baseline_value=baseline_value,
                current_value=current_value,
                delta=delta,
                relative_change=relative_change,
                exceeds_threshold=exceeds,
                label=label,
            )

    def regressions(
        self,
        baseline: RunResult,
        current: RunResult,
        metric: Optional[str] = None,
        identity_column: Optional[str] = None,
    ) -> List[Regression]:
        """Only the records whose change exceeds the threshold"""
        return [
            regression
            for regression in self.compare(baseline, current, metric, identity_column)
            if regression.exceeds_threshold
        ]


def report(
    store: ResultStore,
    catalog: QueryCatalog,
    query_id: str,
    since: int = 1,
    threshold: float = DEFAULT_REGRESSION_THRESHOLD,
    include_all: bool = False,
) -> List[Regression]:
    """
    Compare the newest run of ``query_id`` with the run ``since`` runs older

    Raises:
        UnknownQueryError: query_id not in the catalog
        NoResultsError: Fewer than ``since + 1`` stored runs
        ComparisonError: The query has nothing to align rows on
    """
    if since < 1:
        raise ValueError("since must be at least 1")

    catalog.get(query_id)
    runs = store.recent(query_id, since + 1)
    if len(runs) < since + 1:
        raise NoResultsError(query_id, required=since + 1, available=len(runs))

    current, baseline = runs[0], runs[since]
    comparator = ReportComparator(threshold=threshold, catalog=catalog)
    records = list(comparator.compare(baseline, current))
    flagged = sum(1 for record in records if record.exceeds_threshold)
    logger.info(
        f"Compared '{query_id}' {baseline.timestamp.isoformat()} -> {current.timestamp.isoformat()}: "
        f"{len(records)} aligned rows, {flagged} over {threshold:.0%}"
    )
    if include_all:
        return records
    return [record for record in records if record.exceeds_threshold]
