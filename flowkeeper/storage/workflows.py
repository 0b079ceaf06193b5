"""Workflow lifecycle: creation, locked retrieval, persistence, finishing."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from ..contracts import BaseWorkflow
from ..db import Database, EventRow, Status, WorkflowRow
from ..errors import UnknownWorkflowTypeError
from ..registry import REGISTRY, WorkflowRegistry
from ..results import ErrorKind, Result
from ..utils.clock import utcnow
from .events import EventRouter
from .locks import LockManager
from .subscriptions import SubscriptionIndex

logger = logging.getLogger(__name__)

TASK_LIST_SIZE_LIMIT = 100


class WorkflowStore:
    """Owns the ``workflow`` table.

    Only the holder of a workflow's lock should call :meth:`save` for it;
    :meth:`get` with ``lock=True`` is the single way to become that holder.
    """

    def __init__(
        self,
        db: Database,
        locks: LockManager,
        subscriptions: SubscriptionIndex,
        events: EventRouter,
        registry: Optional[WorkflowRegistry] = None,
    ) -> None:
        self._db = db
        self._locks = locks
        self._subscriptions = subscriptions
        self._events = events
        self._registry = registry if registry is not None else REGISTRY

    # ------------------------------------------------------------------
    # Creation
    async def create(self, workflow: BaseWorkflow, unique: bool = False) -> Result[int]:
        """Insert ``workflow`` with its subscriptions; returns the new id.

        With ``unique`` the workflow's fingerprint is checked first and stored
        as a reserved subscription row, so a second workflow with the same
        fingerprint is refused while the first is unfinished.
        """
        fingerprint = None
        if unique:
            fingerprint = workflow.uniqueness()
            if fingerprint is None:
                logger.error(f"Workflow type '{workflow.type}' has no uniqueness fingerprint")
                return Result.failure(
                    ErrorKind.INVALID, f"{workflow.type} has no uniqueness fingerprint"
                )
            key, value = fingerprint
            if await self._subscriptions.uniqueness_exists(key, value):
                logger.info(f"Workflow {workflow.type} with {key}={value} already exists")
                return Result.failure(ErrorKind.DUPLICATE, f"{key}={value}")

        try:
            async with self._db.transaction() as conn:
                result = await conn.execute(
                    insert(WorkflowRow).values(
                        type=workflow.type,
                        context=workflow.get_state(),
                        scheduled_at=workflow.scheduled_at,
                        status=Status.ACTIVE,
                        lock="",
                        error_count=0,
                    )
                )
                workflow_id = result.inserted_primary_key[0]
                await self._subscriptions.register(
                    conn, workflow_id, workflow.subscriptions()
                )
                if fingerprint is not None:
                    await self._subscriptions.add_uniqueness(conn, workflow_id, *fingerprint)
        except IntegrityError as exc:
            logger.error(f"Creating workflow {workflow.type} failed: {exc}")
            kind = ErrorKind.DUPLICATE if unique else ErrorKind.TRANSACTION
            return Result.failure(kind, str(exc))
        except SQLAlchemyError as exc:
            logger.error(f"Creating workflow {workflow.type} failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))

        workflow.id = workflow_id
        logger.debug(f"Created workflow {workflow_id} of type {workflow.type}")
        return Result.success(workflow_id)

    # ------------------------------------------------------------------
    # Retrieval
    async def get(self, workflow_id: int, lock: bool = True) -> Result[BaseWorkflow]:
        """Load a workflow, taking its lock unless ``lock`` is False.

        The row is read back under the token just written, so a caller that
        lost the race for the lock gets no row (``CONTENTION``) even though
        the workflow exists.
        An id with no row is ``NOT_FOUND`` whether or not the lock was taken.
        """
        stmt = select(
            WorkflowRow.type,
            WorkflowRow.context,
            WorkflowRow.error_count,
            WorkflowRow.scheduled_at,
        ).where(WorkflowRow.workflow_id == workflow_id)
        acquired = False
        try:
            if lock:
                token, acquired = await self._locks.acquire(workflow_id)
                stmt = stmt.where(WorkflowRow.lock == token)
            async with self._db.connect() as conn:
                row = (await conn.execute(stmt)).first()
                if row is None and lock and not acquired:
                    exists = select(WorkflowRow.workflow_id).where(
                        WorkflowRow.workflow_id == workflow_id
                    )
                    if (await conn.execute(exists)).first() is not None:
                        return Result.failure(ErrorKind.CONTENTION)
        except SQLAlchemyError as exc:
            logger.error(f"Loading workflow {workflow_id} failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))

        if row is None:
            return Result.failure(ErrorKind.NOT_FOUND)

        try:
            workflow = self._registry.create(row.type)
        except UnknownWorkflowTypeError as exc:
            # Stays locked by this process; the reaper frees it once we exit.
            logger.error(f"Workflow {workflow_id}: {exc}")
            return Result.failure(ErrorKind.UNKNOWN_TYPE, str(exc))

        workflow.set_state(row.context)
        workflow.id = workflow_id
        workflow.scheduled_at = row.scheduled_at

        if workflow.many_errors(row.error_count):
            logger.warning(
                f"Workflow {workflow_id} failed {row.error_count} times, finishing it"
            )
            workflow.finish()

        return Result.success(workflow)

    # ------------------------------------------------------------------
    # Persistence
    async def save(
        self,
        workflow: BaseWorkflow,
        unlock: bool = True,
        processed_events: Iterable[int] = (),
        pending_events: bool = False,
    ) -> Result[None]:
        """Persist state and schedule, optionally handing back the lock.

        ``processed_events`` are closed in the same transaction, so no other
        owner can take the lock and still find them active. They stay active
        when the workflow is erroring. ``pending_events`` says active events
        remain beyond those delivered, which makes the workflow due again at
        once. A workflow that reports itself finished is retired together with
        its events and subscriptions.
        """
        if workflow.id is None:
            raise ValueError("Cannot save a workflow that was never created")

        finished = workflow.is_finished()
        values: Dict[str, Any] = {
            "context": workflow.get_state(),
            "scheduled_at": workflow.scheduled_at,
        }
        if unlock or finished:
            values["lock"] = ""
        if finished:
            values["status"] = Status.FINISHED
            values["finished_at"] = utcnow()
        elif unlock:
            values["status"] = Status.ACTIVE
        if unlock and not workflow.is_error():
            values["error_count"] = WorkflowRow.error_count - 1
        if pending_events and not finished and not workflow.is_error():
            values["started_at"] = None

        try:
            async with self._db.transaction() as conn:
                updated = (
                    await conn.execute(
                        update(WorkflowRow)
                        .where(WorkflowRow.workflow_id == workflow.id)
                        .values(**values)
                    )
                ).rowcount
                if updated and finished:
                    await self._retire(conn, workflow.id)
                elif updated and not workflow.is_error():
                    await self._events.close_delivered(conn, workflow.id, processed_events)
        except SQLAlchemyError as exc:
            logger.error(f"Saving workflow {workflow.id} failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))

        if not updated:
            return Result.failure(ErrorKind.NOT_FOUND)
        if finished:
            logger.info(f"Workflow {workflow.id} finished")
        return Result.success()

    async def finish(self, workflow_id: int) -> Result[None]:
        """Retire a workflow without holding its lock."""
        try:
            async with self._db.transaction() as conn:
                updated = (
                    await conn.execute(
                        update(WorkflowRow)
                        .where(WorkflowRow.workflow_id == workflow_id)
                        .values(status=Status.FINISHED, finished_at=utcnow(), lock="")
                    )
                ).rowcount
                if updated:
                    await self._retire(conn, workflow_id)
        except SQLAlchemyError as exc:
            logger.error(f"Finishing workflow {workflow_id} failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))

        if not updated:
            return Result.failure(ErrorKind.NOT_FOUND)
        logger.info(f"Workflow {workflow_id} finished")
        return Result.success()

    async def _retire(self, conn: AsyncConnection, workflow_id: int) -> None:
        await self._events.retire_all(conn, workflow_id)
        await self._subscriptions.retire_all(conn, workflow_id)

    # ------------------------------------------------------------------
    # Work discovery
    async def list_due(self, type_filter: str = "", limit: int = TASK_LIST_SIZE_LIMIT) -> List[int]:
        """Ids of unlocked workflows ready to run, earliest schedule first.

        A workflow is due when its scheduled time has passed, or when it has an
        active event it has not seen yet: one created after its last start, or
        any active event once its last start was cleared by a save that left
        events pending. Concurrent callers may get overlapping ids; :meth:`get` decides who
        runs each one.
        """
        now = utcnow()
        unseen_event = (
            select(EventRow.event_id)
            .where(
                EventRow.workflow_id == WorkflowRow.workflow_id,
                EventRow.status == Status.ACTIVE,
                EventRow.created_at <= now,
                or_(
                    WorkflowRow.started_at.is_(None),
                    EventRow.created_at > WorkflowRow.started_at,
                ),
            )
            .exists()
        )
        stmt = (
            select(WorkflowRow.workflow_id)
            .where(
                WorkflowRow.status == Status.ACTIVE,
                or_(WorkflowRow.scheduled_at <= now, unseen_event),
            )
            .order_by(WorkflowRow.scheduled_at, WorkflowRow.workflow_id)
            .limit(limit)
        )
        if type_filter:
            stmt = stmt.where(WorkflowRow.type == type_filter)

        async with self._db.connect() as conn:
            return list((await conn.execute(stmt)).scalars().all())
