"""
Application configuration management using Pydantic Settings
"""

import os
import sys
import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dmvwatch.core.constants import (
    APP_NAME,
    CONFIG_FILE,
    RESULTS_FILE,
    PID_FILE,
    DEFAULT_QUERY_TIMEOUT,
    MAX_QUERY_TIMEOUT,
    DEFAULT_CONNECTION_TIMEOUT,
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REGRESSION_THRESHOLD,
)
from dmvwatch.core.exceptions import ConfigError


def get_app_dir() -> Path:
    """
    Get application data directory.

    DMVWATCH_HOME wins; otherwise an OS-specific user data folder.
    """
    override = os.environ.get('DMVWATCH_HOME')
    if override:
        return Path(override)

    if sys.platform == 'win32':
        base = Path(os.environ.get('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    else:
        base = Path.home() / '.config'

    return base / APP_NAME.replace(' ', '')


class DatabaseSettings(BaseModel):
    """Database connection settings"""

    server: str = Field(default="localhost")
    port: int = Field(default=1433, ge=1, le=65535)
    database: str = Field(default="master")
    username: str = Field(default="")
    password: str = Field(default="", repr=False)
    trusted_connection: bool = Field(default=False)
    driver: Optional[str] = Field(default=None)
    encrypt: bool = Field(default=True)
    trust_server_certificate: bool = Field(default=False)
    application_name: str = Field(default=APP_NAME)
    query_timeout: int = Field(default=DEFAULT_QUERY_TIMEOUT, ge=1, le=MAX_QUERY_TIMEOUT)
    connection_timeout: int = Field(default=DEFAULT_CONNECTION_TIMEOUT, ge=1, le=120)
    max_pool_size: int = Field(default=2, ge=1, le=20)
    pool_recycle: int = Field(default=3600, ge=60)
    echo_sql: bool = Field(default=False)


class SchedulerSettings(BaseModel):
    """Scheduler settings"""

    max_in_flight: int = Field(default=DEFAULT_MAX_IN_FLIGHT, ge=1, le=16)
    poll_interval_seconds: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0, le=60)
    # query id -> seconds between triggers; ids missing here are not scheduled
    intervals: dict[str, float] = Field(default_factory=dict)

    @field_validator('intervals')
    @classmethod
    def validate_intervals(cls, v: dict[str, float]) -> dict[str, float]:
        bad = [query_id for query_id, seconds in v.items() if seconds <= 0]
        if bad:
            raise ValueError(f"intervals must be positive: {', '.join(sorted(bad))}")
        return v


class StoreSettings(BaseModel):
    """Result store settings"""

    path: Optional[Path] = Field(default=None)


class CatalogSettings(BaseModel):
    """Diagnostic query catalog settings"""

    # Optional JSON catalog replacing the built-in queries
    path: Optional[Path] = Field(default=None)


class ComparatorSettings(BaseModel):
    """Regression comparison settings"""

    threshold: float = Field(default=DEFAULT_REGRESSION_THRESHOLD, ge=0.0, le=100.0)


class LoggingSettings(BaseModel):
    """Logging settings"""

    level: str = Field(default="INFO")
    file_enabled: bool = Field(default=True)
    retention_days: int = Field(default=7, ge=1, le=30)

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v = v.upper()
        if v not in valid_levels:
            v = 'INFO'
        return v


class Settings(BaseSettings):
    """Main application settings"""

    model_config = SettingsConfigDict(
        env_prefix='DMVWATCH_',
        env_nested_delimiter='__',
        extra='ignore',
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    catalog: CatalogSettings = Field(default_factory=CatalogSettings)
    comparator: ComparatorSettings = Field(default_factory=ComparatorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    app_dir: Path = Field(default_factory=get_app_dir)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment overrides the settings file (credentials stay out of it)
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def data_dir(self) -> Path:
        return self.app_dir / 'data'

    @property
    def logs_dir(self) -> Path:
        return self.app_dir / 'logs'

    @property
    def settings_file(self) -> Path:
        return self.app_dir / 'config' / CONFIG_FILE

    @property
    def results_file(self) -> Path:
        return self.store.path or (self.data_dir / RESULTS_FILE)

    @property
    def pid_file(self) -> Path:
        return self.data_dir / PID_FILE

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'Settings':
        """
        Load settings from a JSON file

        Args:
            path: Explicit settings file. When omitted the file in the
                application directory is used if it exists.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        explicit = path is not None
        settings_file = Path(path) if explicit else get_app_dir() / 'config' / CONFIG_FILE

        data: dict = {}
        if settings_file.exists():
            try:
                with open(settings_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Cannot read settings file: {e}", {"path": str(settings_file)}) from e
            if not isinstance(data, dict):
                raise ConfigError("Settings file must contain a JSON object", {"path": str(settings_file)})
        elif explicit:
            raise ConfigError(f"Settings file not found: {settings_file}")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid settings: {e}", {"path": str(settings_file)}) from e


# Global settings instance (cached)
_settings: Optional[Settings] = None


def get_settings(path: Optional[Path] = None) -> Settings:
    """Get global settings instance (singleton)"""
    global _settings
    if _settings is None:
        _settings = Settings.load(path)
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() reloads"""
    global _settings
    _settings = None
