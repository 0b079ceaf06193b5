"""Event routing.

An incoming event is fanned out into one ``event`` row per matching active
subscription. Matching is done by the store in bounded ``INSERT ... SELECT``
statements, one per tested (key, value) pair, so a subscription is read and
acted upon atomically without locking it.
"""

from __future__ import annotations

import logging
from typing import Iterable, List

from sqlalchemy import DateTime, String, Text, insert, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from ..contracts import Event
from ..db import EMPTY, UNIQUENESS, Database, EventRow, Status, SubscriptionRow
from ..results import ErrorKind, Result
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

ROUTE_ROW_LIMIT = 1000
EVENT_LIST_LIMIT = 100


class EventRouter:
    """Deliver events to subscribed workflows and track their processing."""

    def __init__(self, db: Database, row_limit: int = ROUTE_ROW_LIMIT) -> None:
        self._db = db
        self.row_limit = row_limit

    def _fan_out(self, event: Event, key: str, value: str, now):
        matched = (
            select(
                literal(event.type, String),
                literal(event.context, Text),
                literal(Status.ACTIVE, String),
                SubscriptionRow.workflow_id,
                literal(now, DateTime),
            )
            .where(
                SubscriptionRow.event_type == event.type,
                SubscriptionRow.status == Status.ACTIVE,
                SubscriptionRow.context_key == key,
                SubscriptionRow.context_value == value,
            )
            .limit(self.row_limit)
        )
        return insert(EventRow).from_select(
            ["type", "context", "status", "workflow_id", "created_at"], matched
        )

    async def route(self, event: Event) -> Result[int]:
        """Materialise ``event`` for every matching subscription.

        Tests the wildcard pair first, then each ``key_data`` pair. Returns the
        number of rows written; when nothing matched, a single sentinel row
        owned by workflow 0 records the event as ``NO_SUBSCRIBERS``.
        """
        if event.type == UNIQUENESS:
            logger.error(f"Refusing to route reserved event type {UNIQUENESS}")
            return Result.failure(ErrorKind.TRANSACTION, "reserved event type")

        pairs = {(EMPTY, EMPTY)} | set(event.key_data.items())
        now = utcnow()
        count = 0
        try:
            async with self._db.transaction() as conn:
                for key, value in sorted(pairs):
                    count += (await conn.execute(self._fan_out(event, key, value, now))).rowcount

                if count == 0:
                    await conn.execute(
                        insert(EventRow).values(
                            type=event.type,
                            context=event.context,
                            status=Status.NO_SUBSCRIBERS,
                            workflow_id=0,
                            created_at=now,
                        )
                    )
        except SQLAlchemyError as exc:
            logger.error(f"Routing event {event.type} failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))

        if count == 0:
            logger.info(f"Event {event.type} {event.key_data} has no subscribers")
        else:
            logger.debug(f"Event {event.type} delivered to {count} workflows")
        return Result.success(count)

    async def events_for(self, workflow_id: int, limit: int = EVENT_LIST_LIMIT) -> List[Event]:
        """Active events delivered to ``workflow_id``, oldest first."""
        stmt = (
            select(
                EventRow.event_id,
                EventRow.type,
                EventRow.context,
                EventRow.status,
                EventRow.created_at,
            )
            .where(EventRow.workflow_id == workflow_id, EventRow.status == Status.ACTIVE)
            .order_by(EventRow.event_id)
            .limit(limit)
        )
        async with self._db.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [
            Event(
                event_id=row.event_id,
                type=row.type,
                context=row.context,
                status=row.status,
                created_at=row.created_at,
                workflow_id=workflow_id,
            )
            for row in rows
        ]

    async def close(self, event_id: int) -> Result[None]:
        """Mark a single delivered event processed."""
        stmt = (
            update(EventRow)
            .where(EventRow.event_id == event_id)
            .values(status=Status.PROCESSED, finished_at=utcnow())
        )
        try:
            async with self._db.transaction() as conn:
                closed = (await conn.execute(stmt)).rowcount
        except SQLAlchemyError as exc:
            logger.error(f"Closing event {event_id} failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))
        if closed == 0:
            return Result.failure(ErrorKind.NOT_FOUND)
        return Result.success()

    async def close_delivered(
        self, conn: AsyncConnection, workflow_id: int, event_ids: Iterable[int]
    ) -> int:
        """Mark the given events of ``workflow_id`` processed inside the caller's transaction."""
        event_ids = list(event_ids)
        if not event_ids:
            return 0
        stmt = (
            update(EventRow)
            .where(
                EventRow.workflow_id == workflow_id,
                EventRow.event_id.in_(event_ids),
                EventRow.status == Status.ACTIVE,
            )
            .values(status=Status.PROCESSED, finished_at=utcnow())
        )
        return (await conn.execute(stmt)).rowcount

    async def retire_all(self, conn: AsyncConnection, workflow_id: int) -> int:
        """Close every open event of ``workflow_id`` inside the caller's transaction."""
        stmt = (
            update(EventRow)
            .where(EventRow.workflow_id == workflow_id, EventRow.status == Status.ACTIVE)
            .values(status=Status.PROCESSED, finished_at=utcnow())
        )
        return (await conn.execute(stmt)).rowcount
