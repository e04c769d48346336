"""
Settings for the ETL services.

Values come from a YAML file (``config/etl.yaml`` or the path in
``ETL_CONFIG``), then environment variables override the database block and
the log level. A ``.env`` file in the working directory is loaded first.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .core.backoff import RetryConfig
from .monitoring.monitoring import AlertThresholds

DEFAULT_CONFIG_PATH = Path("config") / "etl.yaml"

ENV_OVERRIDES = {
    "DB_HOST": ("database", "host"),
    "DB_PORT": ("database", "port"),
    "DB_NAME": ("database", "name"),
    "DB_USER": ("database", "user"),
    "DB_PASSWORD": ("database", "password"),
    "LOG_LEVEL": ("logging", "level"),
}


class DatabaseSettings(BaseModel):
    host: str = "localhost"
    port: int = 5432
    name: str = "feedlot"
    user: str = "etl"
    password: Optional[str] = None
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout: float = 30.0


class LoggingSettings(BaseModel):
    level: str = "INFO"
    json_format: bool = True


class ProcessingSettings(BaseModel):
    """
    Attributes:
        batch_size: Rows per loading sub-batch
        row_workers: Threads resolving and upserting rows of one file
        cancel_poll_interval: Seconds between checks for an external FAILED mark
        blob_root: Directory the local blob store reads uploaded files from
    """

    batch_size: int = Field(default=100, gt=0)
    row_workers: int = Field(default=1, gt=0)
    cancel_poll_interval: float = Field(default=1.0, gt=0)
    blob_root: str = "data/uploads"


class MonitoringSettings(BaseModel):
    interval_seconds: float = 300.0
    thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class Settings(BaseModel):
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    class Config:
        json_schema_extra = {
            "example": {
                "database": {"host": "localhost", "port": 5432, "name": "feedlot", "user": "etl"},
                "logging": {"level": "INFO"},
                "retry": {"max_retries": 3, "base_delay_ms": 1000, "max_delay_ms": 30000},
                "processing": {"batch_size": 100, "row_workers": 4},
                "monitoring": {"interval_seconds": 300},
            }
        }


def _apply_env_overrides(data: dict[str, Any], environ: dict[str, str]) -> dict[str, Any]:
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            data.setdefault(section, {})[key] = value
    return data


def load_settings(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
    dotenv: bool = True
) -> Settings:
    """
    Load settings.

    Args:
        path: YAML file; defaults to ``ETL_CONFIG`` or ``config/etl.yaml``.
            A missing default file yields built-in defaults; a missing
            explicit file is an error.
        environ: Environment to read overrides from (defaults to os.environ)
        dotenv: Load a ``.env`` file into the process environment first

    Raises:
        FileNotFoundError: An explicitly requested file does not exist
        ValueError: The file is not a YAML mapping
    """
    if dotenv:
        load_dotenv()
    environ = dict(os.environ) if environ is None else environ

    explicit = path or environ.get("ETL_CONFIG")
    config_path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Configuration file must contain a mapping: {config_path}")
        data = loaded or {}
    elif explicit:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    return Settings.model_validate(_apply_env_overrides(data, environ))
