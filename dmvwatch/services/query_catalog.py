"""
Diagnostic query catalog

Fixed, ordered set of DiagnosticQuery entries keyed by id. Loaded once at
startup; there is no runtime add/remove.
"""

import json
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from dmvwatch.core.constants import RiskFlag, SortDirection
from dmvwatch.core.exceptions import ConfigError, DuplicateIdError, UnknownQueryError
from dmvwatch.core.logger import get_logger
from dmvwatch.database.queries.expensive_queries import ExpensiveQueries
from dmvwatch.models.diagnostic_query import DiagnosticQuery

logger = get_logger('services.catalog')

_QUERY_STATS = "sys.dm_exec_query_stats"
_PROCEDURE_STATS = "sys.dm_exec_procedure_stats"


def _builtin_entries() -> List[DiagnosticQuery]:
    """Built-in diagnostics in declaration (display) order"""
    scan = frozenset({RiskFlag.LARGE_SCAN})
    scan_with_plan = frozenset({RiskFlag.LARGE_SCAN, RiskFlag.PLAN_XML})
    recompile_with_plan = frozenset({RiskFlag.RECOMPILE, RiskFlag.LARGE_SCAN, RiskFlag.PLAN_XML})

    return [
        DiagnosticQuery(
            id="top-io",
            title="Top statements by average I/O",
            sql=ExpensiveQueries.TOP_IO_STATEMENTS,
            target_dmv=_QUERY_STATS,
            metric_column="Avg IO",
            identity_column="Sql",
            risk_flags=recompile_with_plan,
            expected_columns=("Sql", "Exec Cnt", "Avg IO", "Plan", "Total Reads", "Last Reads",
                              "Total Writes", "Last Writes", "Total Worker Time", "Last Worker Time",
                              "Total Elps Time", "Last Elps Time", "Compile Time", "Last Exec Time"),
            default_interval_seconds=900,
            description="Fifty cached statements with the highest (reads + writes) / executions.",
        ),
        DiagnosticQuery(
            id="top-io-rows",
            title="Top statements by average I/O with row counts",
            sql=ExpensiveQueries.TOP_IO_STATEMENTS_WITH_ROWS,
            target_dmv=_QUERY_STATS,
            metric_column="Avg IO",
            identity_column="Sql",
            risk_flags=scan,
            expected_columns=("Sql", "Exec Cnt", "Avg IO", "Total Reads", "Last Reads", "Total Writes",
                              "Last Writes", "Total Worker Time", "Last Worker Time", "Total Elapsed Time",
                              "Last Elapsed Time", "Cached Time", "Last Exec Time", "Total Rows",
                              "Last Rows", "Min Rows", "Max Rows"),
            description="Same ranking as top-io without plan XML, adding returned row counts.",
        ),
        DiagnosticQuery(
            id="top-io-procedures",
            title="Top procedures by average I/O (current database)",
            sql=ExpensiveQueries.TOP_IO_PROCEDURES,
            target_dmv=_PROCEDURE_STATS,
            metric_column="Avg IO",
            identity_column="Procedure",
            risk_flags=recompile_with_plan,
            expected_columns=("Procedure", "Plan", "Avg IO", "Exec Cnt", "Cached", "Last Exec Time",
                              "Total Reads", "Last Reads", "Total Writes", "Last Writes",
                              "Total Worker Time", "Last Worker Time", "Total Elapsed Time",
                              "Last Elapsed Time"),
            default_interval_seconds=900,
        ),
        DiagnosticQuery(
            id="top-io-procedures-server",
            title="Top procedures by average I/O (all databases)",
            sql=ExpensiveQueries.TOP_IO_PROCEDURES_ALL_DATABASES,
            target_dmv=_PROCEDURE_STATS,
            metric_column="Avg IO",
            identity_column="Proc Name",
            expected_columns=("Proc Name", "DB", "Type", "Exec Count", "Avg IO", "Total Reads",
                              "Last Reads", "Total Writes", "Last Writes", "Total Worker Time",
                              "Last Worker Time", "Total Elapsed Time", "Last Elapsed Time",
                              "Last Exec Time"),
        ),
        DiagnosticQuery(
            id="plan-handle-totals",
            title="Totals per cached plan",
            sql=ExpensiveQueries.PLAN_HANDLE_TOTALS,
            target_dmv=_QUERY_STATS,
            metric_column="TotalLogicalReads",
            identity_column="text",
            risk_flags=scan,
            expected_columns=("text", "TotalExecutionCount", "TotalElapsedTime",
                              "TotalLogicalReads", "TotalPhysicalReads"),
        ),
        DiagnosticQuery(
            id="plan-hash-totals",
            title="Totals per query plan hash",
            sql=ExpensiveQueries.PLAN_HASH_TOTALS,
            target_dmv=_QUERY_STATS,
            metric_column="TotalLogicalReads",
            identity_column="query_plan_hash",
            risk_flags=scan,
            expected_columns=("query_plan_hash", "text", "TotalExecutionCount", "TotalElapsedTime",
                              "TotalLogicalReads", "TotalPhysicalReads"),
            description="Parameterized variants of one query share a plan hash; aggregate over it.",
        ),
        DiagnosticQuery(
            id="physical-reads-by-hash",
            title="Physical reads per query hash",
            sql=ExpensiveQueries.PHYSICAL_READS_BY_HASH,
            target_dmv=_QUERY_STATS,
            metric_column="total_physical_reads",
            identity_column="query_hash",
            risk_flags=scan,
            expected_columns=("query_hash", "statement_text", "total_physical_reads"),
        ),
        DiagnosticQuery(
            id="object-io-per-exec",
            title="Procedures by I/O per execution",
            sql=ExpensiveQueries.OBJECT_IO_PER_EXECUTION,
            target_dmv=_QUERY_STATS,
            metric_column="IO_Per_Execution",
            identity_column="ObjectName",
            risk_flags=scan,
            description="Mostly reports and jobs.",
        ),
        DiagnosticQuery(
            id="object-io-total",
            title="Procedures by total I/O",
            sql=ExpensiveQueries.OBJECT_IO_TOTAL,
            target_dmv=_QUERY_STATS,
            metric_column="Total_IO_Reads",
            identity_column="ObjectName",
            risk_flags=scan,
            description="Mostly operational procedures.",
        ),
        DiagnosticQuery(
            id="adhoc-io-total",
            title="Ad hoc batches by total I/O",
            sql=ExpensiveQueries.ADHOC_IO_TOTAL,
            target_dmv=_QUERY_STATS,
            metric_column="Total_IO_Reads",
            identity_column="QueryText",
            risk_flags=scan,
        ),
        DiagnosticQuery(
            id="adhoc-io-per-exec",
            title="Ad hoc batches by I/O per execution",
            sql=ExpensiveQueries.ADHOC_IO_PER_EXECUTION,
            target_dmv=_QUERY_STATS,
            metric_column="IO_Per_Execution",
            identity_column="QueryText",
            risk_flags=scan,
        ),
        DiagnosticQuery(
            id="top-logical-reads",
            title="Top 10 statements by logical reads",
            sql=ExpensiveQueries.TOP_LOGICAL_READS,
            target_dmv=_QUERY_STATS,
            metric_column="total_logical_reads",
            identity_column="statement_text",
            risk_flags=scan,
        ),
        DiagnosticQuery(
            id="avg-cpu-by-hash",
            title="Average CPU per query/plan hash",
            sql=ExpensiveQueries.AVG_CPU_BY_HASH,
            target_dmv=_QUERY_STATS,
            metric_column="Avg CPU Time",
            identity_column="Query Plan Hash",
            risk_flags=scan,
            expected_columns=("Query Hash", "Query Plan Hash", "Avg CPU Time", "Example Statement Text"),
            description="Mostly one plan per query hash suggests forced parameterization may help.",
        ),
        DiagnosticQuery(
            id="cumulative-cpu-by-hash",
            title="Cumulative CPU per query hash",
            sql=ExpensiveQueries.CUMULATIVE_CPU_BY_HASH,
            target_dmv=_QUERY_STATS,
            metric_column="Total CPU Time - Cumulative Effect",
            identity_column="Query Hash",
            risk_flags=scan,
            expected_columns=("Query Hash", "Total CPU Time - Cumulative Effect", "Number of plans",
                              "Number of executions", "Example Statement Text"),
        ),
        DiagnosticQuery(
            id="top-cpu",
            title="Top 10 statements by total CPU",
            sql=ExpensiveQueries.TOP_TOTAL_CPU,
            target_dmv=_QUERY_STATS,
            metric_column="cpu_time",
            identity_column="statement_text",
            risk_flags=scan_with_plan,
            expected_columns=("statement_text", "query_plan", "cpu_time"),
            default_interval_seconds=900,
        ),
        DiagnosticQuery(
            id="top-avg-cpu",
            title="Top 10 batches by average CPU",
            sql=ExpensiveQueries.TOP_AVERAGE_CPU,
            target_dmv=_QUERY_STATS,
            metric_column="avg_cpu_time",
            identity_column="query_text",
            risk_flags=scan,
            expected_columns=("total_worker_time", "execution_count", "avg_cpu_time", "query_text"),
        ),
        DiagnosticQuery(
            id="top-io-total",
            title="Top 10 batches by total I/O",
            sql=ExpensiveQueries.TOP_TOTAL_IO,
            target_dmv=_QUERY_STATS,
            metric_column="io_total",
            identity_column="query_text",
            risk_flags=scan,
        ),
        DiagnosticQuery(
            id="execution-counts",
            title="Execution count of every cached statement",
            sql=ExpensiveQueries.EXECUTION_COUNTS,
            target_dmv=_QUERY_STATS,
            metric_column="execution_count",
            identity_column="query_text",
            risk_flags=scan,
            description="Unbounded: returns one row per cached statement.",
        ),
        DiagnosticQuery(
            id="live-query-profiles",
            title="Live per-operator progress of running statements",
            sql=ExpensiveQueries.LIVE_QUERY_PROFILES,
            target_dmv="sys.dm_exec_query_profiles",
            metric_column="row_count",
            sort_direction=SortDirection.ASC,
            risk_flags=frozenset({RiskFlag.LIVE_PROFILE}),
            description="Empty unless a session captures actual plans; not comparable between runs.",
        ),
        DiagnosticQuery(
            id="optimizer-info",
            title="Optimizer event counters",
            sql=ExpensiveQueries.OPTIMIZER_INFO,
            target_dmv="sys.dm_exec_query_optimizer_info",
            metric_column="occurrence",
            identity_column="counter",
            expected_columns=("counter", "occurrence", "value"),
            default_interval_seconds=3600,
            description="Cumulative since startup; useful to track optimization cost of a workload.",
        ),
    ]


class QueryCatalog:
    """
    Ordered, read-only collection of diagnostic queries

    Usage:
        catalog = QueryCatalog.default()
        query = catalog.get("top-io")
        for query in catalog: ...
    """

    def __init__(self, entries: Iterable[DiagnosticQuery]):
        """
        Raises:
            DuplicateIdError: If two entries share an id
            ConfigError: If an entry has an empty id or no SQL
        """
        self._entries: Dict[str, DiagnosticQuery] = {}
        for entry in entries:
            if not entry.id or not entry.id.strip():
                raise ConfigError("Diagnostic query with empty id")
            if not entry.sql or not entry.sql.strip():
                raise ConfigError(f"Diagnostic query '{entry.id}' has no SQL", {"query_id": entry.id})
            if entry.id in self._entries:
                raise DuplicateIdError(entry.id)
            self._entries[entry.id] = entry

    @classmethod
    def default(cls) -> 'QueryCatalog':
        """Catalog of the built-in expensive query diagnostics"""
        return cls(_builtin_entries())

    @classmethod
    def from_file(cls, path: Path) -> 'QueryCatalog':
        """
        Load a catalog from JSON: ``{"queries": [{"id": ..., "sql": ...}, ...]}``

        Raises:
            ConfigError: If the file cannot be read or an entry is invalid
        """
        path = Path(path)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read query catalog: {e}", {"path": str(path)}) from e

        raw_entries = data.get("queries") if isinstance(data, dict) else None
        if not isinstance(raw_entries, list):
            raise ConfigError("Query catalog must contain a 'queries' list", {"path": str(path)})

        entries = []
        for index, raw in enumerate(raw_entries):
            try:
                entries.append(DiagnosticQuery.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigError(f"Invalid catalog entry #{index}: {e}", {"path": str(path)}) from e

        catalog = cls(entries)
        logger.info(f"Loaded {len(catalog)} diagnostic queries from {path}")
        return catalog

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'QueryCatalog':
        """Catalog file when configured, built-in catalog otherwise"""
        return cls.from_file(path) if path else cls.default()

    def get(self, query_id: str) -> DiagnosticQuery:
        """
        Raises:
            UnknownQueryError: If no entry has this id
        """
        try:
            return self._entries[query_id]
        except KeyError:
            raise UnknownQueryError(query_id) from None

    def ids(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, query_id: object) -> bool:
        return query_id in self._entries

    def __iter__(self) -> Iterator[DiagnosticQuery]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)
