"""Reclaim workflows whose lock owner died mid-execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from ..db import Database, Status, WorkflowRow
from ..utils.clock import utcnow
from .hosts import HostRegistry
from .locks import LockManager

logger = logging.getLogger(__name__)

CLEANUP_TIME = 3600
CLEANUP_BATCH_LIMIT = 100


@dataclass
class ReapReport:
    """Outcome of one sweep, by workflow id."""

    restarted: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def stuck(self) -> int:
        return len(self.restarted) + len(self.failed) + len(self.skipped)


class Reaper:
    """Periodic sweep that unlocks workflows held by dead owners.

    This is the only component allowed to change the lock of a workflow it
    does not own, and only after the owner's host or process is gone.
    """

    def __init__(
        self,
        db: Database,
        hosts: HostRegistry,
        locks: LockManager,
        execution_time_limit: float = CLEANUP_TIME,
        limit: int = CLEANUP_BATCH_LIMIT,
    ) -> None:
        self._db = db
        self._hosts = hosts
        self._locks = locks
        self.execution_time_limit = execution_time_limit
        self.limit = limit

    async def sweep(self) -> ReapReport:
        await self._hosts.heartbeat()
        active_hosts = await self._hosts.active_hosts()

        cutoff = utcnow() - timedelta(seconds=self.execution_time_limit)
        stmt = (
            select(WorkflowRow.workflow_id, WorkflowRow.lock)
            .where(
                WorkflowRow.status == Status.IN_PROGRESS,
                WorkflowRow.lock != "",
                WorkflowRow.started_at < cutoff,
            )
            .order_by(WorkflowRow.started_at)
            .limit(self.limit)
        )
        async with self._db.connect() as conn:
            rows = (await conn.execute(stmt)).all()

        report = ReapReport()
        logger.warning(f"CLEANUP: {len(rows)} workflows stuck")
        for workflow_id, token in rows:
            try:
                host, pid = self._locks.parse(token)
            except ValueError:
                logger.warning(f"CLEANUP: Workflow {workflow_id} has unreadable lock {token!r}")
                host, pid = "", 0

            if self._locks.is_owner_alive(host, pid, active_hosts):
                logger.warning(f"CLEANUP: Workflow {workflow_id} - is running for long time")
                report.skipped.append(workflow_id)
                continue

            try:
                reclaimed = await self._reclaim(workflow_id, token)
            except SQLAlchemyError as exc:
                logger.error(f"CLEANUP: Workflow {workflow_id} unlock failed: {exc}")
                reclaimed = False

            if reclaimed:
                logger.info(f"CLEANUP: Workflow {workflow_id} restarted")
                report.restarted.append(workflow_id)
            else:
                logger.warning(f"CLEANUP: Workflow {workflow_id} restart failed")
                report.failed.append(workflow_id)
        return report

    async def _reclaim(self, workflow_id: int, token: str) -> bool:
        # Guarded by the observed token so a fresh owner is never evicted.
        stmt = (
            update(WorkflowRow)
            .where(
                WorkflowRow.workflow_id == workflow_id,
                WorkflowRow.lock == token,
                WorkflowRow.status == Status.IN_PROGRESS,
            )
            .values(lock="", status=Status.ACTIVE)
        )
        async with self._db.transaction() as conn:
            return (await conn.execute(stmt)).rowcount > 0
