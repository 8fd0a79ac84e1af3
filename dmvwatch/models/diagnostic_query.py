"""
Diagnostic query model

A catalog entry: the SQL text of one DMV diagnostic plus the metadata the
harness needs to schedule it and compare its runs.
"""

from typing import Optional, Tuple, FrozenSet, Dict, Any
from dataclasses import dataclass, field

from dmvwatch.core.constants import SortDirection, RiskFlag


@dataclass(frozen=True)
class DiagnosticQuery:
    """
    Immutable catalog entry

    ``metric_column`` is the column compared between runs; rows of two runs
    are aligned on ``identity_column``. ``expected_columns`` is presentation
    metadata only, result rows keep whatever columns the server returns.
    """
    id: str
    sql: str
    title: str = ""
    target_dmv: str = ""
    metric_column: str = ""
    sort_direction: SortDirection = SortDirection.DESC
    identity_column: Optional[str] = None
    risk_flags: FrozenSet[RiskFlag] = field(default_factory=frozenset)
    expected_columns: Tuple[str, ...] = ()
    default_interval_seconds: Optional[int] = None
    description: str = ""

    @property
    def forces_recompile(self) -> bool:
        return RiskFlag.RECOMPILE in self.risk_flags

    @property
    def is_risky(self) -> bool:
        """Scans the plan cache or recompiles on every run"""
        return bool(self.risk_flags & {RiskFlag.RECOMPILE, RiskFlag.LARGE_SCAN})

    @property
    def is_comparable(self) -> bool:
        """Runs can be compared only with a metric and an identity column"""
        return bool(self.metric_column and self.identity_column)

    @property
    def display_name(self) -> str:
        return self.title or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "sql": self.sql,
            "target_dmv": self.target_dmv,
            "metric_column": self.metric_column,
            "sort_direction": self.sort_direction.value,
            "identity_column": self.identity_column,
            "risk_flags": sorted(flag.value for flag in self.risk_flags),
            "expected_columns": list(self.expected_columns),
            "default_interval_seconds": self.default_interval_seconds,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DiagnosticQuery':
        """Build an entry from catalog JSON (raises KeyError/ValueError on bad input)"""
        interval = data.get("default_interval_seconds")
        return cls(
            id=str(data["id"]).strip(),
            sql=str(data["sql"]),
            title=str(data.get("title", "")),
            target_dmv=str(data.get("target_dmv", "")),
            metric_column=str(data.get("metric_column", "")),
            sort_direction=SortDirection(str(data.get("sort_direction", "desc")).lower()),
            identity_column=data.get("identity_column"),
            risk_flags=frozenset(RiskFlag(flag) for flag in data.get("risk_flags", [])),
            expected_columns=tuple(data.get("expected_columns", [])),
            default_interval_seconds=int(interval) if interval is not None else None,
            description=str(data.get("description", "")),
        )
