"""
Run result, regression and scheduler event models
"""

from types import MappingProxyType
from typing import Optional, Tuple, Mapping, Dict, Any, Iterable
from dataclasses import dataclass, field
from datetime import datetime

from dmvwatch.core.constants import RunOutcome


def _freeze_rows(rows: Iterable[Mapping[str, Any]]) -> Tuple[Mapping[str, Any], ...]:
    return tuple(MappingProxyType(dict(row)) for row in rows)


@dataclass(frozen=True)
class RunResult:
    """
    One execution of a diagnostic query

    Created once by the executor and never mutated; rows are read-only
    mappings in the order the server returned them.
    """
    query_id: str
    timestamp: datetime
    rows: Tuple[Mapping[str, Any], ...] = ()
    duration_ms: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "rows", _freeze_rows(self.rows))

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(self.rows[0].keys()) if self.rows else ()

    def to_record(self) -> Dict[str, Any]:
        """Persisted layout: {query_id, timestamp, duration_ms, rows}"""
        return {
            "query_id": self.query_id,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": round(self.duration_ms, 3),
            "rows": [dict(row) for row in self.rows],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'RunResult':
        return cls(
            query_id=record["query_id"],
            timestamp=datetime.fromisoformat(record["timestamp"]),
            rows=record.get("rows", []),
            duration_ms=float(record.get("duration_ms", 0.0)),
        )


@dataclass(frozen=True)
class Regression:
    """
    Metric change of one aligned row between two runs

    Derived on demand from two RunResults, never persisted.
    """
    query_id: str
    baseline_timestamp: datetime
    current_timestamp: datetime
    metric: str
    identity: str
    baseline_value: float
    current_value: float
    delta: float
    relative_change: Optional[float]
    exceeds_threshold: bool
    label: str = ""

    @property
    def change_percent(self) -> Optional[float]:
        if self.relative_change is None:
            return None
        return self.relative_change * 100.0


@dataclass(frozen=True)
class SchedulerEvent:
    """Outcome of one trigger of a scheduled query"""
    query_id: str
    outcome: RunOutcome
    at: float
    detail: str = ""
    recorded_at: datetime = field(default_factory=datetime.now)
