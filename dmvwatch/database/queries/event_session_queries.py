"""
Extended Events session templates

DDL for the lightweight tracing sessions used next to the DMV diagnostics:
statements that never get a cached plan (statement-level recompiles) are
invisible to sys.dm_exec_query_stats and can only be captured this way.

Templates use str.format placeholders; callers must validate every value
before formatting (DDL cannot be parameterized).
"""

from typing import Dict, Final
from dataclasses import dataclass, field


@dataclass(frozen=True)
class EventSessionTemplate:
    """CREATE EVENT SESSION template and its default placeholder values"""
    name: str
    description: str
    create_sql: str
    defaults: Dict[str, str] = field(default_factory=dict)
    file_target: bool = False


class EventSessionQueries:
    """Session lifecycle statements and the built-in session templates"""

    SESSION_EXISTS: Final[str] = """
    select count(*) as session_count
    from sys.server_event_sessions
    where name = :session_name
    """

    SESSION_RUNNING: Final[str] = """
    select count(*) as running_count
    from sys.dm_xe_sessions
    where name = :session_name
    """

    START_SESSION: Final[str] = "ALTER EVENT SESSION [{session_name}] ON SERVER STATE = START"
    STOP_SESSION: Final[str] = "ALTER EVENT SESSION [{session_name}] ON SERVER STATE = STOP"
    DROP_SESSION: Final[str] = "DROP EVENT SESSION [{session_name}] ON SERVER"

    # Captured events from an event_file / asynchronous_file_target
    READ_FILE_TARGET: Final[str] = """
    select
        data.value('(/event/@timestamp)[1]', 'datetime2') as [Time]
        ,data.value('(/event/@name)[1]', 'nvarchar(128)') as [Event]
        ,data.value('(/event/data[@name="cpu_time"]/value)[1]', 'bigint') as [CPU (us)]
        ,convert(float, data.value('(/event/data[@name="duration"]/value)[1]', 'bigint')) / 1000000 as [Duration (s)]
        ,data.value('(/event/action[@name="sql_text"]/value)[1]', 'nvarchar(max)') as [SQL Statement]
        ,'0x' + data.value('(/event/action[@name="plan_handle"]/value)[1]', 'varchar(100)') as [Plan Handle]
    from (
        select convert(xml, event_data) as data
        from sys.fn_xe_file_target_read_file(:file_pattern, null, null, null)
    ) entries
    order by [Time] desc
    """

    COUNT_FILE_TARGET: Final[str] = """
    select count(*) as event_count
    from sys.fn_xe_file_target_read_file(:file_pattern, null, null, null)
    """

    # ==========================================================================
    # TEMPLATES
    # ==========================================================================

    # Row and thread counts for every plan operator at the end of execution;
    # far cheaper than capturing actual plans
    QUERY_THREAD_PROFILE = EventSessionTemplate(
        name="QueryThreadProfile",
        description="Per-operator row/thread counts (query_thread_profile) for one database",
        create_sql="""
    CREATE EVENT SESSION [{session_name}] ON SERVER
    ADD EVENT sqlserver.query_thread_profile
        (WHERE (sqlserver.database_name = N'{database_name}')),
    ADD EVENT sqlserver.sql_batch_completed
        (WHERE (sqlserver.database_name = N'{database_name}'))
    WITH (TRACK_CAUSALITY = ON)
    """,
        defaults={"database_name": "master"},
    )

    # Statements above a CPU threshold, with text and plan handle (Paul Randal)
    EXPENSIVE_QUERIES = EventSessionTemplate(
        name="EE_ExpensiveQueries",
        description="sql_statement_completed above a CPU threshold, written to an event file",
        create_sql="""
    CREATE EVENT SESSION [{session_name}] ON SERVER
    ADD EVENT sqlserver.sql_statement_completed
        (ACTION (sqlserver.sql_text, sqlserver.plan_handle)
         WHERE sqlserver.database_name = N'{database_name}' AND cpu_time > {cpu_threshold_us})
    ADD TARGET package0.event_file
        (SET filename = N'{file_path}')
    WITH (MAX_DISPATCH_LATENCY = 1 SECONDS)
    """,
        defaults={"database_name": "master", "cpu_threshold_us": "10000000", "file_path": "EE_ExpensiveQueries.xel"},
        file_target=True,
    )

    # Stored procedure and batch completion (Grant Fritchey)
    QUERY_PERFORMANCE = EventSessionTemplate(
        name="QueryPerformance",
        description="rpc_completed and sql_batch_completed for one database, written to an event file",
        create_sql="""
    CREATE EVENT SESSION [{session_name}] ON SERVER
    ADD EVENT sqlserver.rpc_completed
        (WHERE (sqlserver.database_name = N'{database_name}')),
    ADD EVENT sqlserver.sql_batch_completed
        (WHERE (sqlserver.database_name = N'{database_name}'))
    ADD TARGET package0.event_file (SET filename = N'{file_path}')
    WITH (MAX_MEMORY = 4096 KB,
        EVENT_RETENTION_MODE = ALLOW_SINGLE_EVENT_LOSS,
        MAX_DISPATCH_LATENCY = 3 SECONDS,
        MAX_EVENT_SIZE = 0 KB,
        MEMORY_PARTITION_MODE = NONE,
        TRACK_CAUSALITY = OFF,
        STARTUP_STATE = OFF)
    """,
        defaults={"database_name": "master", "file_path": "QueryPerformance.xel"},
        file_target=True,
    )


SESSION_TEMPLATES: Final[Dict[str, EventSessionTemplate]] = {
    "query-thread-profile": EventSessionQueries.QUERY_THREAD_PROFILE,
    "expensive-queries": EventSessionQueries.EXPENSIVE_QUERIES,
    "query-performance": EventSessionQueries.QUERY_PERFORMANCE,
}
