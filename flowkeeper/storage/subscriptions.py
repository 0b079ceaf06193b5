"""Subscription rows linking workflows to the events they wait on."""

from __future__ import annotations

import logging
from typing import Iterable, List

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from ..contracts import SubscriptionFilter
from ..db import UNIQUENESS, Database, Status, SubscriptionRow

logger = logging.getLogger(__name__)


class SubscriptionIndex:
    """Create, query and retire subscriptions.

    Writes run on the caller's connection so they commit or roll back with the
    surrounding workflow transaction.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def register(
        self,
        conn: AsyncConnection,
        workflow_id: int,
        filters: Iterable[SubscriptionFilter],
    ) -> int:
        """Insert one row per filter value, skipping rows that already exist."""
        inserted = 0
        for sub in filters:
            for value in sub.values:
                existing = await conn.execute(
                    select(SubscriptionRow.workflow_id).where(
                        SubscriptionRow.workflow_id == workflow_id,
                        SubscriptionRow.event_type == sub.event_type,
                        SubscriptionRow.context_key == sub.context_key,
                        SubscriptionRow.context_value == value,
                    )
                )
                if existing.first() is not None:
                    logger.debug(
                        f"Workflow {workflow_id} already subscribed to "
                        f"{sub.event_type} {sub.context_key}={value}"
                    )
                    continue
                await conn.execute(
                    insert(SubscriptionRow).values(
                        workflow_id=workflow_id,
                        status=Status.ACTIVE,
                        event_type=sub.event_type,
                        context_key=sub.context_key,
                        context_value=value,
                    )
                )
                inserted += 1
        return inserted

    async def add_uniqueness(
        self, conn: AsyncConnection, workflow_id: int, key: str, value: str
    ) -> None:
        await conn.execute(
            insert(SubscriptionRow).values(
                workflow_id=workflow_id,
                status=Status.ACTIVE,
                event_type=UNIQUENESS,
                context_key=key,
                context_value=value,
            )
        )

    async def uniqueness_exists(self, key: str, value: str) -> bool:
        """Whether a live workflow already carries the fingerprint ``(key, value)``."""
        stmt = (
            select(SubscriptionRow.workflow_id)
            .where(
                SubscriptionRow.status == Status.ACTIVE,
                SubscriptionRow.event_type == UNIQUENESS,
                SubscriptionRow.context_key == key,
                SubscriptionRow.context_value == value,
            )
            .limit(1)
        )
        async with self._db.connect() as conn:
            return (await conn.execute(stmt)).first() is not None

    async def retire_all(self, conn: AsyncConnection, workflow_id: int) -> int:
        stmt = (
            update(SubscriptionRow)
            .where(SubscriptionRow.workflow_id == workflow_id)
            .values(status=Status.FINISHED)
        )
        return (await conn.execute(stmt)).rowcount

    async def list_for(self, workflow_id: int) -> List[SubscriptionFilter]:
        """Active event filters of ``workflow_id``, one per stored value."""
        stmt = (
            select(
                SubscriptionRow.event_type,
                SubscriptionRow.context_key,
                SubscriptionRow.context_value,
            )
            .where(
                SubscriptionRow.workflow_id == workflow_id,
                SubscriptionRow.status == Status.ACTIVE,
                SubscriptionRow.event_type != UNIQUENESS,
            )
            .order_by(SubscriptionRow.subscription_id)
        )
        async with self._db.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [
            SubscriptionFilter(
                event_type=row.event_type,
                context_key=row.context_key,
                context_value=row.context_value,
            )
            for row in rows
        ]
