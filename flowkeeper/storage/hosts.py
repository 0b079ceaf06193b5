"""Heartbeat table of live worker hosts."""

from __future__ import annotations

import logging
import socket
from datetime import timedelta
from typing import Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..db import Database, HostRow
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

HOST_DELETE_DELAY = 300


class HostRegistry:
    """Maintain this host's heartbeat and answer which hosts are alive."""

    def __init__(
        self,
        db: Database,
        hostname: Optional[str] = None,
        ttl: float = HOST_DELETE_DELAY,
    ) -> None:
        self._db = db
        self.hostname = hostname or socket.gethostname()
        self.ttl = ttl

    def _upsert(self, now):
        insert = pg_insert if self._db.dialect_name == "postgresql" else sqlite_insert
        stmt = insert(HostRow).values(hostname=self.hostname, updated_at=now)
        return stmt.on_conflict_do_update(
            index_elements=[HostRow.hostname], set_={"updated_at": now}
        )

    async def heartbeat(self) -> int:
        """Refresh this host and purge hosts silent for longer than ``ttl``.

        Returns the number of purged hosts.
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=self.ttl)
        async with self._db.transaction() as conn:
            await conn.execute(self._upsert(now))
            purged = (
                await conn.execute(delete(HostRow).where(HostRow.updated_at < cutoff))
            ).rowcount
        if purged:
            logger.info(f"Purged {purged} silent hosts")
        return purged

    async def active_hosts(self) -> Set[str]:
        async with self._db.connect() as conn:
            result = await conn.execute(select(HostRow.hostname))
            return set(result.scalars().all())
