"""
Expensive query diagnostics

SQL texts against the execution-statistics DMVs (sys.dm_exec_query_stats,
sys.dm_exec_procedure_stats, sys.dm_exec_query_plan,
sys.dm_exec_query_profiles, sys.dm_exec_query_optimizer_info).

All statements are read-only single batches: no GO separators, no
parameters. Column aliases are the names rows are archived under, so
changing an alias breaks comparison with runs already stored.
"""

from typing import Final

# Statement text extracted from the batch using the statement offsets
# (offsets are byte positions in an nvarchar, hence the /2)
_STATEMENT_TEXT = """substring(qt.text, (qs.statement_start_offset/2)+1,
    ((case qs.statement_end_offset
        when -1 then datalength(qt.text)
        else qs.statement_end_offset
    end - qs.statement_start_offset)/2)+1)"""


class ExpensiveQueries:
    """
    Diagnostic SQL texts, grouped by the DMV they read.

    The sys.dm_exec_query_stats family only covers statements whose plans
    are still cached; statement-level recompiles never show up there and
    need an Extended Events session instead (see event_session_queries).
    """

    # ==========================================================================
    # sys.dm_exec_query_stats - STATEMENT LEVEL
    # ==========================================================================

    # Fifty most expensive statements by average I/O per execution
    TOP_IO_STATEMENTS: Final[str] = f"""
    select top 50
        {_STATEMENT_TEXT} as [Sql]
        ,qs.execution_count as [Exec Cnt]
        ,(qs.total_logical_reads + qs.total_logical_writes) / qs.execution_count as [Avg IO]
        ,qp.query_plan as [Plan]
        ,qs.total_logical_reads as [Total Reads]
        ,qs.last_logical_reads as [Last Reads]
        ,qs.total_logical_writes as [Total Writes]
        ,qs.last_logical_writes as [Last Writes]
        ,qs.total_worker_time as [Total Worker Time]
        ,qs.last_worker_time as [Last Worker Time]
        ,qs.total_elapsed_time / 1000 as [Total Elps Time]
        ,qs.last_elapsed_time / 1000 as [Last Elps Time]
        ,qs.creation_time as [Compile Time]
        ,qs.last_execution_time as [Last Exec Time]
    from sys.dm_exec_query_stats qs with (nolock)
    cross apply sys.dm_exec_sql_text(qs.sql_handle) qt
    cross apply sys.dm_exec_query_plan(qs.plan_handle) qp
    order by [Avg IO] desc
    option (recompile)
    """

    # Same ranking with row counts, no plan XML
    TOP_IO_STATEMENTS_WITH_ROWS: Final[str] = f"""
    select top 50
        {_STATEMENT_TEXT} as [Sql]
        ,qs.execution_count as [Exec Cnt]
        ,(qs.total_logical_reads + qs.total_logical_writes) / qs.execution_count as [Avg IO]
        ,qs.total_logical_reads as [Total Reads], qs.last_logical_reads as [Last Reads]
        ,qs.total_logical_writes as [Total Writes], qs.last_logical_writes as [Last Writes]
        ,qs.total_worker_time as [Total Worker Time], qs.last_worker_time as [Last Worker Time]
        ,qs.total_elapsed_time / 1000 as [Total Elapsed Time]
        ,qs.last_elapsed_time / 1000 as [Last Elapsed Time]
        ,qs.creation_time as [Cached Time]
        ,qs.last_execution_time as [Last Exec Time]
        ,qs.total_rows as [Total Rows], qs.last_rows as [Last Rows]
        ,qs.min_rows as [Min Rows], qs.max_rows as [Max Rows]
    from sys.dm_exec_query_stats qs with (nolock)
    cross apply sys.dm_exec_sql_text(qs.sql_handle) qt
    order by [Avg IO] desc
    """

    # Ten statements with the most logical reads (Pinal Dave)
    TOP_LOGICAL_READS: Final[str] = f"""
    select top 10
        {_STATEMENT_TEXT} as [statement_text]
        ,qs.execution_count
        ,qs.total_logical_reads, qs.last_logical_reads
        ,qs.total_logical_writes, qs.last_logical_writes
        ,qs.total_worker_time
        ,qs.last_worker_time
        ,qs.total_elapsed_time / 1000000 as total_elapsed_time_in_s
        ,qs.last_elapsed_time / 1000000 as last_elapsed_time_in_s
        ,qs.last_execution_time
    from sys.dm_exec_query_stats qs
    cross apply sys.dm_exec_sql_text(qs.sql_handle) qt
    order by qs.total_logical_reads desc
    """

    # ==========================================================================
    # sys.dm_exec_query_stats - AGGREGATES
    # ==========================================================================

    # Totals per cached plan
    PLAN_HANDLE_TOTALS: Final[str] = """
    select
        t.text as [text]
        ,s.TotalExecutionCount
        ,s.TotalElapsedTime
        ,s.TotalLogicalReads
        ,s.TotalPhysicalReads
    from (
        select deqs.plan_handle,
            sum(deqs.execution_count) as TotalExecutionCount,
            sum(deqs.total_elapsed_time) as TotalElapsedTime,
            sum(deqs.total_logical_reads) as TotalLogicalReads,
            sum(deqs.total_physical_reads) as TotalPhysicalReads
        from sys.dm_exec_query_stats as deqs
        group by deqs.plan_handle
    ) as s
    cross apply sys.dm_exec_sql_text(s.plan_handle) as t
    order by s.TotalLogicalReads desc
    """

    # Totals per query_plan_hash; parameterized variants of one query share it
    PLAN_HASH_TOTALS: Final[str] = """
    select
        s.query_plan_hash as [query_plan_hash]
        ,t.text as [text]
        ,s.TotalExecutionCount
        ,s.TotalElapsedTime
        ,s.TotalLogicalReads
        ,s.TotalPhysicalReads
    from (
        select deqs.query_plan_hash,
            sum(deqs.execution_count) as TotalExecutionCount,
            sum(deqs.total_elapsed_time) as TotalElapsedTime,
            sum(deqs.total_logical_reads) as TotalLogicalReads,
            sum(deqs.total_physical_reads) as TotalPhysicalReads
        from sys.dm_exec_query_stats as deqs
        group by deqs.query_plan_hash
    ) as s
    cross apply (
        select top 1 plan_handle
        from sys.dm_exec_query_stats as deqs
        where s.query_plan_hash = deqs.query_plan_hash
    ) as p
    cross apply sys.dm_exec_sql_text(p.plan_handle) as t
    order by s.TotalLogicalReads desc
    """

    # Physical reads per query_hash (Amit Bansal)
    PHYSICAL_READS_BY_HASH: Final[str] = """
    select
        q.[query_hash]
        ,substring(t.text, (q.[statement_start_offset] / 2) + 1,
            ((case q.[statement_end_offset]
                when -1 then datalength(t.[text])
                else q.[statement_end_offset]
            end - q.[statement_start_offset]) / 2) + 1) as [statement_text]
        ,sum(q.[total_physical_reads]) as [total_physical_reads]
    from sys.[dm_exec_query_stats] as q
    cross apply sys.[dm_exec_sql_text](q.sql_handle) as t
    group by q.[query_hash],
        substring(t.text, (q.[statement_start_offset] / 2) + 1,
            ((case q.[statement_end_offset]
                when -1 then datalength(t.[text])
                else q.[statement_end_offset]
            end - q.[statement_start_offset]) / 2) + 1)
    order by sum(q.[total_physical_reads]) desc
    """

    # Highest average CPU per (query_hash, query_plan_hash) (Kimberly Tripp)
    AVG_CPU_BY_HASH: Final[str] = """
    select
        [Query Hash] = [qs2].[query_hash]
        ,[Query Plan Hash] = [qs2].[query_plan_hash]
        ,[Avg CPU Time] = sum([qs2].[total_worker_time]) / sum([qs2].[execution_count])
        ,[Example Statement Text] = min([qs2].[statement_text])
    from (
        select [qs].*,
            [statement_text] = substring([st].[text], ([qs].[statement_start_offset] / 2) + 1,
                ((case [statement_end_offset]
                    when -1 then datalength([st].[text])
                    else [qs].[statement_end_offset]
                end - [qs].[statement_start_offset]) / 2) + 1)
        from [sys].[dm_exec_query_stats] as [qs]
        cross apply [sys].[dm_exec_sql_text]([qs].[sql_handle]) as [st]
    ) as [qs2]
    group by [qs2].[query_hash], [qs2].[query_plan_hash]
    order by [Avg CPU Time] desc
    """

    # Cumulative CPU per query_hash with distinct plan count (Kimberly Tripp)
    CUMULATIVE_CPU_BY_HASH: Final[str] = """
    select
        [qs2].[query_hash] as [Query Hash]
        ,sum([qs2].[total_worker_time]) as [Total CPU Time - Cumulative Effect]
        ,count(distinct [qs2].[query_plan_hash]) as [Number of plans]
        ,sum([qs2].[execution_count]) as [Number of executions]
        ,min([qs2].[statement_text]) as [Example Statement Text]
    from (
        select [qs].*,
            [statement_text] = substring([st].[text], ([qs].[statement_start_offset] / 2) + 1,
                ((case [statement_end_offset]
                    when -1 then datalength([st].[text])
                    else [qs].[statement_end_offset]
                end - [qs].[statement_start_offset]) / 2) + 1)
        from [sys].[dm_exec_query_stats] as [qs]
        cross apply [sys].[dm_exec_sql_text]([qs].[sql_handle]) as [st]
    ) as [qs2]
    group by [qs2].[query_hash]
    order by [Total CPU Time - Cumulative Effect] desc
    """

    # ==========================================================================
    # sys.dm_exec_query_stats - MEMORY CONSUMPTION BY OBJECT / AD HOC
    # ==========================================================================

    _OBJECT_IO_COLUMNS = """
        DatabaseName       = db_name(qt.dbid)
        ,ObjectName        = object_schema_name(qt.objectid, dbid) + '.' + object_name(qt.objectid, qt.dbid)
        ,DiskReads         = sum(qs.total_physical_reads)
        ,MemoryReads       = sum(qs.total_logical_reads)
        ,Total_IO_Reads    = sum(qs.total_physical_reads + qs.total_logical_reads)
        ,Executions        = sum(qs.execution_count)
        ,IO_Per_Execution  = sum((qs.total_physical_reads + qs.total_logical_reads) / qs.execution_count)
        ,CPUTime           = sum(qs.total_worker_time)
        ,DiskWaitAndCPUTime = sum(qs.total_elapsed_time)
        ,MemoryWrites      = sum(qs.max_logical_writes)
        ,DateLastExecuted  = max(qs.last_execution_time)"""

    _ADHOC_IO_COLUMNS = """
        DatabaseName       = db_name(qt.dbid)
        ,QueryText         = qt.text
        ,DiskReads         = sum(qs.total_physical_reads)
        ,MemoryReads       = sum(qs.total_logical_reads)
        ,Total_IO_Reads    = sum(qs.total_physical_reads + qs.total_logical_reads)
        ,Executions        = sum(qs.execution_count)
        ,IO_Per_Execution  = sum((qs.total_physical_reads + qs.total_logical_reads) / qs.execution_count)
        ,CPUTime           = sum(qs.total_worker_time)
        ,DiskWaitAndCPUTime = sum(qs.total_elapsed_time)
        ,MemoryWrites      = sum(qs.max_logical_writes)
        ,DateLastExecuted  = max(qs.last_execution_time)"""

    # Procedures by I/O per execution (mostly reports and jobs)
    OBJECT_IO_PER_EXECUTION: Final[str] = f"""
    select top 100 *
    from (
        select {_OBJECT_IO_COLUMNS}
        from sys.dm_exec_query_stats as qs
        cross apply sys.dm_exec_sql_text(qs.sql_handle) as qt
        group by db_name(qt.dbid), object_schema_name(qt.objectid, dbid) + '.' + object_name(qt.objectid, qt.dbid)
    ) t
    order by IO_Per_Execution desc
    """

    # Procedures by total I/O (mostly operational procedures)
    OBJECT_IO_TOTAL: Final[str] = f"""
    select top 100 *
    from (
        select {_OBJECT_IO_COLUMNS}
        from sys.dm_exec_query_stats as qs
        cross apply sys.dm_exec_sql_text(qs.sql_handle) as qt
        group by db_name(qt.dbid), object_schema_name(qt.objectid, dbid) + '.' + object_name(qt.objectid, qt.dbid)
    ) t
    order by Total_IO_Reads desc
    """

    # Ad hoc batches (no owning object) by total I/O
    ADHOC_IO_TOTAL: Final[str] = f"""
    select top 100 *
    from (
        select {_ADHOC_IO_COLUMNS}
        from sys.dm_exec_query_stats as qs
        cross apply sys.dm_exec_sql_text(qs.sql_handle) as qt
        where object_schema_name(qt.objectid, dbid) + '.' + object_name(qt.objectid, qt.dbid) is null
        group by db_name(qt.dbid), qt.text, object_schema_name(qt.objectid, dbid) + '.' + object_name(qt.objectid, qt.dbid)
    ) t
    order by Total_IO_Reads desc
    """

    # Ad hoc batches by I/O per execution
    ADHOC_IO_PER_EXECUTION: Final[str] = f"""
    select top 100 *
    from (
        select {_ADHOC_IO_COLUMNS}
        from sys.dm_exec_query_stats as qs
        cross apply sys.dm_exec_sql_text(qs.sql_handle) as qt
        where object_schema_name(qt.objectid, dbid) + '.' + object_name(qt.objectid, qt.dbid) is null
        group by db_name(qt.dbid), qt.text, object_schema_name(qt.objectid, dbid) + '.' + object_name(qt.objectid, qt.dbid)
    ) t
    order by IO_Per_Execution desc
    """

    # ==========================================================================
    # sys.dm_exec_query_stats - QUICK TOP 10s (Amit Pandey)
    # ==========================================================================

    TOP_TOTAL_CPU: Final[str] = """
    select top 10
        qt.text as statement_text
        ,qp.query_plan
        ,qs.total_worker_time as cpu_time
    from sys.dm_exec_query_stats qs
    cross apply sys.dm_exec_sql_text(qs.sql_handle) as qt
    cross apply sys.dm_exec_query_plan(qs.plan_handle) as qp
    order by qs.total_worker_time desc
    """

    TOP_AVERAGE_CPU: Final[str] = """
    select top 10
        qs.total_worker_time
        ,qs.execution_count
        ,qs.total_worker_time / qs.execution_count as [avg_cpu_time]
        ,qt.text as query_text
    from sys.dm_exec_query_stats qs
    cross apply sys.dm_exec_sql_text(qs.plan_handle) as qt
    order by [avg_cpu_time] desc
    """

    TOP_TOTAL_IO: Final[str] = """
    select top 10
        qs.total_logical_reads
        ,qs.total_logical_writes
        ,qs.execution_count
        ,qs.total_logical_reads + qs.total_logical_writes as [io_total]
        ,qt.text as query_text
        ,db_name(qt.dbid) as database_name
        ,qt.objectid as object_id
    from sys.dm_exec_query_stats qs
    cross apply sys.dm_exec_sql_text(qs.sql_handle) qt
    where qs.total_logical_reads + qs.total_logical_writes > 0
    order by [io_total] desc
    """

    EXECUTION_COUNTS: Final[str] = """
    select
        qs.execution_count
        ,qt.text as query_text
        ,qt.dbid
        ,db_name(qt.dbid) as database_name
        ,qt.objectid
        ,qs.total_rows
        ,qs.last_rows
        ,qs.min_rows
        ,qs.max_rows
    from sys.dm_exec_query_stats as qs
    cross apply sys.dm_exec_sql_text(qs.sql_handle) as qt
    order by qs.execution_count desc
    """

    # ==========================================================================
    # sys.dm_exec_procedure_stats
    # ==========================================================================

    # Fifty most expensive procedures in the current database by average I/O
    TOP_IO_PROCEDURES: Final[str] = """
    select top 50
        s.name + '.' + p.name as [Procedure]
        ,qp.query_plan as [Plan]
        ,(ps.total_logical_reads + ps.total_logical_writes) / ps.execution_count as [Avg IO]
        ,ps.execution_count as [Exec Cnt]
        ,ps.cached_time as [Cached]
        ,ps.last_execution_time as [Last Exec Time]
        ,ps.total_logical_reads as [Total Reads]
        ,ps.last_logical_reads as [Last Reads]
        ,ps.total_logical_writes as [Total Writes]
        ,ps.last_logical_writes as [Last Writes]
        ,ps.total_worker_time as [Total Worker Time]
        ,ps.last_worker_time as [Last Worker Time]
        ,ps.total_elapsed_time as [Total Elapsed Time]
        ,ps.last_elapsed_time as [Last Elapsed Time]
    from sys.procedures as p with (nolock)
    join sys.schemas s with (nolock) on p.schema_id = s.schema_id
    join sys.dm_exec_procedure_stats as ps with (nolock) on p.object_id = ps.object_id
    outer apply sys.dm_exec_query_plan(ps.plan_handle) qp
    order by [Avg IO] desc
    option (recompile)
    """

    # Server-wide procedures, triggers and functions by average I/O
    TOP_IO_PROCEDURES_ALL_DATABASES: Final[str] = """
    select top 50
        db_name(ps.database_id) + '.' + object_name(ps.object_id, ps.database_id) as [Proc Name]
        ,db_name(ps.database_id) as [DB]
        ,ps.type_desc as [Type]
        ,ps.execution_count as [Exec Count]
        ,(ps.total_logical_reads + ps.total_logical_writes) / ps.execution_count as [Avg IO]
        ,ps.total_logical_reads as [Total Reads], ps.last_logical_reads as [Last Reads]
        ,ps.total_logical_writes as [Total Writes], ps.last_logical_writes as [Last Writes]
        ,ps.total_worker_time as [Total Worker Time], ps.last_worker_time as [Last Worker Time]
        ,ps.total_elapsed_time / 1000 as [Total Elapsed Time]
        ,ps.last_elapsed_time / 1000 as [Last Elapsed Time]
        ,ps.last_execution_time as [Last Exec Time]
    from sys.dm_exec_procedure_stats ps with (nolock)
    order by [Avg IO] desc
    """

    # ==========================================================================
    # LIVE PROFILES / OPTIMIZER
    # ==========================================================================

    # Per-operator row counts of running statements; rows only appear for
    # sessions capturing actual plans (or with lightweight profiling on)
    LIVE_QUERY_PROFILES: Final[str] = """
    select
        deqp.session_id
        ,deqp.physical_operator_name
        ,deqp.node_id
        ,deqp.thread_id
        ,deqp.row_count
        ,deqp.estimate_row_count
        ,deqp.rewind_count
        ,deqp.rebind_count
    from sys.dm_exec_query_profiles as deqp
    """

    # Cumulative optimizer events since startup
    OPTIMIZER_INFO: Final[str] = """
    select
        deqoi.counter
        ,deqoi.occurrence
        ,deqoi.value
    from sys.dm_exec_query_optimizer_info as deqoi
    """
