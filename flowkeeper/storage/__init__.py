"""Persistence and coordination core for flowkeeper workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowkeeperConfig, load_config
from ..db import Database
from ..registry import REGISTRY, WorkflowRegistry
from .diagnostics import DiagnosticLog
from .events import EventRouter
from .hosts import HostRegistry
from .locks import LockManager, LockToken
from .reaper import Reaper, ReapReport
from .subscriptions import SubscriptionIndex
from .workflows import WorkflowStore


class Storage:
    """All storage components bound to one :class:`Database`.

    Build it once per process, pass it to the worker and the reaper, and
    ``await storage.close()`` on shutdown.
    """

    def __init__(
        self,
        db: Database,
        config: Optional[FlowkeeperConfig] = None,
        registry: Optional[WorkflowRegistry] = None,
    ) -> None:
        config = config or FlowkeeperConfig()
        self.config = config
        self.db = db
        self.registry = registry if registry is not None else REGISTRY
        self.locks = LockManager(db, hostname=config.hostname)
        self.hosts = HostRegistry(db, hostname=config.hostname, ttl=config.reaper.host_ttl)
        self.subscriptions = SubscriptionIndex(db)
        self.events = EventRouter(db)
        self.workflows = WorkflowStore(
            db, self.locks, self.subscriptions, self.events, registry=self.registry
        )
        self.reaper = Reaper(
            db,
            self.hosts,
            self.locks,
            execution_time_limit=config.reaper.execution_time_limit,
        )
        self.diagnostics = DiagnosticLog(db, hostname=config.hostname)

    async def init_db(self) -> None:
        await self.db.init_db()

    async def verify_schema(self) -> None:
        await self.db.verify_schema()

    async def close(self) -> None:
        await self.db.dispose()


def get_storage(
    database_url: Optional[str] = None,
    config: Optional[FlowkeeperConfig] = None,
    registry: Optional[WorkflowRegistry] = None,
) -> Storage:
    """Build a :class:`Storage` for the configured database.

    ``database_url`` is taken from the argument, then ``FLOWKEEPER_DATABASE_URL``
    or ``DATABASE_URL``, then the loaded configuration. Every call returns a
    new object with its own connection pool.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWKEEPER_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    db = Database(database_url, echo=config.debug_sql)
    return Storage(db, config=config, registry=registry)


__all__ = [
    "DiagnosticLog",
    "EventRouter",
    "HostRegistry",
    "LockManager",
    "LockToken",
    "Reaper",
    "ReapReport",
    "Storage",
    "SubscriptionIndex",
    "WorkflowStore",
    "get_storage",
]
