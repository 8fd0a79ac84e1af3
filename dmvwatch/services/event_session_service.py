"""
Extended Events Service - create, start, stop, drop and read tracing sessions
"""

import re
from typing import Any, Dict, List, Optional

from dmvwatch.core.exceptions import ConfigError
from dmvwatch.core.logger import get_logger
from dmvwatch.database.queries.event_session_queries import (
    EventSessionQueries,
    EventSessionTemplate,
    SESSION_TEMPLATES,
)
from dmvwatch.services.executor import normalize_rows

logger = get_logger('services.event_sessions')

# DDL cannot be parameterized: every interpolated value must match one of these
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]{0,127}$")
_FILE_PATH = re.compile(r"^[A-Za-z0-9_\-.:\\/ ]{1,260}$")
_NUMBER = re.compile(r"^\d{1,18}$")


def get_template(template_name: str) -> EventSessionTemplate:
    """Look up a built-in session template by its command-line name"""
    template = SESSION_TEMPLATES.get(template_name)
    if template is None:
        raise ConfigError(
            f"Unknown event session template: '{template_name}'",
            {"available": sorted(SESSION_TEMPLATES)},
        )
    return template


def validate_value(key: str, value: str) -> str:
    """Validate one placeholder value before it is formatted into DDL"""
    value = str(value)
    if key == "file_path":
        pattern = _FILE_PATH
    elif key.endswith("_us") or key.endswith("_count"):
        pattern = _NUMBER
    else:
        pattern = _IDENTIFIER
    if not pattern.match(value) or "'" in value or "]" in value:
        raise ConfigError(f"Invalid value for '{key}': {value!r}", {"key": key})
    return value


def file_pattern(file_path: str) -> str:
    """Rollover files are named <base>_<n>_<ticks>.xel; read them all"""
    if file_path.lower().endswith(".xel"):
        return file_path[:-4] + "*.xel"
    return file_path + "*.xel"


class EventSessionService:
    """
    Extended Events session lifecycle over a DatabaseConnection

    Usage:
        service = EventSessionService(connection)
        name = service.create("expensive-queries", database_name="Sales")
        service.start("expensive-queries")
        events = service.read_events("expensive-queries")
    """

    def __init__(self, connection):
        self._connection = connection

    def _resolve(self, template_name: str, overrides: Optional[Dict[str, Any]] = None):
        template = get_template(template_name)
        values = dict(template.defaults)
        values["session_name"] = template.name
        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value
        return template, {key: validate_value(key, value) for key, value in values.items()}

    def session_name(self, template_name: str, **overrides) -> str:
        _, values = self._resolve(template_name, overrides)
        return values["session_name"]

    # === Lifecycle ===

    def exists(self, template_name: str, **overrides) -> bool:
        name = self.session_name(template_name, **overrides)
        count = self._connection.execute_scalar(EventSessionQueries.SESSION_EXISTS, {"session_name": name})
        return bool(count)

    def is_running(self, template_name: str, **overrides) -> bool:
        name = self.session_name(template_name, **overrides)
        count = self._connection.execute_scalar(EventSessionQueries.SESSION_RUNNING, {"session_name": name})
        return bool(count)

    def create(self, template_name: str, **overrides) -> str:
        """
        Create the session on the server

        Returns:
            The server-side session name

        Raises:
            ConfigError: Unknown template or an invalid placeholder value
            ExecutionError: The server rejected the DDL (permissions included)
        """
        template, values = self._resolve(template_name, overrides)
        name = values["session_name"]
        if self.exists(template_name, **overrides):
            logger.info(f"Event session [{name}] already exists")
            return name
        self._connection.execute_non_query(template.create_sql.format(**values))
        logger.info(f"Created event session [{name}]")
        return name

    def start(self, template_name: str, **overrides) -> str:
        name = self.session_name(template_name, **overrides)
        if self.is_running(template_name, **overrides):
            logger.info(f"Event session [{name}] already running")
            return name
        self._connection.execute_non_query(EventSessionQueries.START_SESSION.format(session_name=name))
        logger.info(f"Started event session [{name}]")
        return name

    def stop(self, template_name: str, **overrides) -> str:
        name = self.session_name(template_name, **overrides)
        if not self.is_running(template_name, **overrides):
            logger.info(f"Event session [{name}] is not running")
            return name
        self._connection.execute_non_query(EventSessionQueries.STOP_SESSION.format(session_name=name))
        logger.info(f"Stopped event session [{name}]")
        return name

    def drop(self, template_name: str, **overrides) -> str:
        name = self.session_name(template_name, **overrides)
        if not self.exists(template_name, **overrides):
            logger.info(f"Event session [{name}] does not exist")
            return name
        self._connection.execute_non_query(EventSessionQueries.DROP_SESSION.format(session_name=name))
        logger.info(f"Dropped event session [{name}]")
        return name

    # === Captured events ===

    def read_events(self, template_name: str, **overrides) -> List[Dict[str, Any]]:
        """
        Events captured by a file-target session, newest first

        Raises:
            ConfigError: The template has no file target
        """
        template, values = self._resolve(template_name, overrides)
        if not template.file_target:
            raise ConfigError(
                f"Event session template '{template_name}' has no file target",
                {"template": template_name},
            )
        pattern = file_pattern(values["file_path"])
        rows = self._connection.execute_query(EventSessionQueries.READ_FILE_TARGET, {"file_pattern": pattern})
        logger.debug(f"Read {len(rows)} events from {pattern}")
        return normalize_rows(rows)
