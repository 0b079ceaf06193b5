"""Append-only execution log kept in the store."""

from __future__ import annotations

import hashlib
import logging
import os
import socket
from typing import List, Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError

from ..db import Database, LogRow
from ..results import ErrorKind, Result

logger = logging.getLogger(__name__)


class DiagnosticLog:
    def __init__(self, db: Database, hostname: Optional[str] = None) -> None:
        self._db = db
        self.host = hashlib.md5((hostname or socket.gethostname()).encode()).hexdigest()

    async def store(self, message: str, workflow_id: int = 0) -> Result[None]:
        """Append ``message``; a failed write is logged and reported, never raised."""
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    insert(LogRow).values(
                        workflow_id=workflow_id,
                        log_text=message,
                        pid=os.getpid(),
                        host=self.host,
                    )
                )
        except SQLAlchemyError as exc:
            logger.warning(f"Diagnostic log write failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))
        return Result.success()

    async def recent(self, workflow_id: int, limit: int = 50) -> List[str]:
        stmt = (
            select(LogRow.log_text)
            .where(LogRow.workflow_id == workflow_id)
            .order_by(LogRow.log_id.desc())
            .limit(limit)
        )
        async with self._db.connect() as conn:
            return list((await conn.execute(stmt)).scalars().all())
