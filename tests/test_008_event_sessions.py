import pytest

from dmvwatch.core.exceptions import ConfigError
from dmvwatch.services.event_session_service import (
    EventSessionService,
    file_pattern,
    get_template,
    validate_value,
)


class RecordingConnection:
    """Answers the existence/running checks from flags and records DDL"""

    def __init__(self, exists=False, running=False, events=None):
        self.exists = exists
        self.running = running
        self.events = events or []
        self.ddl = []
        self.queries = []

    def execute_scalar(self, query, params=None):
        self.queries.append((query, params))
        if "dm_xe_sessions" in query:
            return 1 if self.running else 0
        return 1 if self.exists else 0

    def execute_non_query(self, query):
        self.ddl.append(query)

    def execute_query(self, query, params=None):
        self.queries.append((query, params))
        return self.events


def test_create_formats_template():
    connection = RecordingConnection()
    service = EventSessionService(connection)

    name = service.create("expensive-queries", database_name="Sales", cpu_threshold_us="5000000",
                          file_path=r"D:\xe\Expensive.xel")

    assert name == "EE_ExpensiveQueries"
    ddl = connection.ddl[0]
    assert "CREATE EVENT SESSION [EE_ExpensiveQueries]" in ddl
    assert "N'Sales'" in ddl
    assert "cpu_time > 5000000" in ddl
    assert r"D:\xe\Expensive.xel" in ddl


def test_create_uses_template_defaults():
    connection = RecordingConnection()
    EventSessionService(connection).create("query-thread-profile")
    assert "N'master'" in connection.ddl[0]
    assert "query_thread_profile" in connection.ddl[0]


def test_create_skips_existing_session():
    connection = RecordingConnection(exists=True)
    EventSessionService(connection).create("query-performance")
    assert connection.ddl == []


def test_start_stop_drop():
    connection = RecordingConnection(exists=True)
    service = EventSessionService(connection)

    service.start("query-performance")
    connection.running = True
    service.stop("query-performance", session_name="Perf_2")
    service.drop("query-performance")

    assert connection.ddl == [
        "ALTER EVENT SESSION [QueryPerformance] ON SERVER STATE = START",
        "ALTER EVENT SESSION [Perf_2] ON SERVER STATE = STOP",
        "DROP EVENT SESSION [QueryPerformance] ON SERVER",
    ]


def test_session_name_is_passed_as_parameter():
    connection = RecordingConnection()
    assert not EventSessionService(connection).exists("query-performance")
    assert connection.queries[0][1] == {"session_name": "QueryPerformance"}


def test_injection_attempts_are_rejected():
    service = EventSessionService(RecordingConnection())
    with pytest.raises(ConfigError):
        service.create("query-performance", database_name="x'; DROP DATABASE Sales; --")
    with pytest.raises(ConfigError):
        service.start("query-performance", session_name="a] ON SERVER; --")
    with pytest.raises(ConfigError):
        service.create("expensive-queries", cpu_threshold_us="1 OR 1=1")


def test_unknown_template_is_config_error():
    with pytest.raises(ConfigError):
        get_template("everything")


def test_read_events_uses_rollover_pattern():
    connection = RecordingConnection(events=[{"Time": "2024-03-01", "CPU (us)": 12000000,
                                              "Plan Handle": "0x06"}])
    events = EventSessionService(connection).read_events("expensive-queries")

    assert events[0]["CPU (us)"] == 12000000
    assert connection.queries[-1][1] == {"file_pattern": "EE_ExpensiveQueries*.xel"}


def test_read_events_requires_file_target():
    with pytest.raises(ConfigError):
        EventSessionService(RecordingConnection()).read_events("query-thread-profile")


def test_validate_value_and_file_pattern():
    assert validate_value("database_name", "Sales_2024") == "Sales_2024"
    assert validate_value("cpu_threshold_us", 100) == "100"
    assert file_pattern("trace") == "trace*.xel"
    assert file_pattern(r"C:\xe\Perf.XEL") == r"C:\xe\Perf*.xel"
