from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel


class WorkerConfig(BaseModel):
    """Polling settings for the worker loop."""

    poll_interval: float = 1.0
    batch_size: int = 100


class ReaperConfig(BaseModel):
    """Settings for reclaiming abandoned workflows."""

    interval: float = 60.0
    execution_time_limit: float = 3600.0
    host_ttl: float = 300.0


class FlowkeeperConfig(BaseModel):
    """Top-level configuration model."""

    database_url: str = "sqlite+aiosqlite:///flowkeeper.db"
    hostname: Optional[str] = None
    debug_sql: bool = False
    log_level: str = "INFO"
    worker: WorkerConfig = WorkerConfig()
    reaper: ReaperConfig = ReaperConfig()


def load_config(path: Optional[str] = None) -> FlowkeeperConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWKEEPER_CONFIG env
            variable or 'flowkeeper.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWKEEPER_CONFIG", "flowkeeper.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowkeeperConfig(**data)
    else:
        config = FlowkeeperConfig()

    env_db_url = os.getenv("FLOWKEEPER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    if os.getenv("DEBUG_WF_SQL") is not None:
        config.debug_sql = True
    return config
