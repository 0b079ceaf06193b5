"""Workflow locks.

A workflow is owned by whoever wrote a non-empty token into its ``lock``
column. Tokens are only ever created by a single conditional ``UPDATE``
guarded by ``lock = ''`` and handed back by resetting the column, so the
store's row-level atomicity is the whole mutual-exclusion protocol.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from typing import Collection, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..db import Database, Status, WorkflowRow
from ..results import ErrorKind, Result
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockToken:
    """Owner of a workflow lock: host, process id and a per-acquire nonce."""

    host: str
    pid: int
    nonce: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def encode(self) -> str:
        return f"{self.host}:{self.pid}:{self.nonce}"

    @classmethod
    def parse(cls, token: str) -> "LockToken":
        parts = token.rsplit(":", 2)
        if len(parts) != 3 or not parts[0]:
            raise ValueError(f"Malformed lock token: {token!r}")
        host, pid, nonce = parts
        try:
            return cls(host=host, pid=int(pid), nonce=nonce)
        except ValueError:
            raise ValueError(f"Malformed lock token: {token!r}") from None


def process_exists(pid: int) -> bool:
    """Whether ``pid`` is running on this machine."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user.
        return True
    return True


class LockManager:
    """Acquire and release workflow locks on behalf of this process."""

    def __init__(
        self,
        db: Database,
        hostname: Optional[str] = None,
        pid: Optional[int] = None,
    ) -> None:
        self._db = db
        self.hostname = hostname or socket.gethostname()
        self.pid = pid if pid is not None else os.getpid()

    def new_token(self) -> str:
        return LockToken(self.hostname, self.pid).encode()

    async def acquire(self, workflow_id: int) -> Tuple[str, bool]:
        """Try to take the lock; ``acquired`` is False when another owner holds it."""
        token = self.new_token()
        stmt = (
            update(WorkflowRow)
            .where(WorkflowRow.workflow_id == workflow_id, WorkflowRow.lock == "")
            .values(
                lock=token,
                status=Status.IN_PROGRESS,
                started_at=utcnow(),
                error_count=WorkflowRow.error_count + 1,
            )
        )
        async with self._db.transaction() as conn:
            acquired = (await conn.execute(stmt)).rowcount > 0
        if not acquired:
            logger.debug(f"Lock on workflow {workflow_id} held elsewhere")
        return token, acquired

    async def release(self, workflow_id: int) -> Result[None]:
        """Clear the lock; status and timestamps are left to the caller."""
        stmt = (
            update(WorkflowRow)
            .where(WorkflowRow.workflow_id == workflow_id)
            .values(lock="")
        )
        try:
            async with self._db.transaction() as conn:
                released = (await conn.execute(stmt)).rowcount
        except SQLAlchemyError as exc:
            logger.error(f"Releasing lock on workflow {workflow_id} failed: {exc}")
            return Result.failure(ErrorKind.TRANSACTION, str(exc))
        if released == 0:
            return Result.failure(ErrorKind.NOT_FOUND)
        return Result.success()

    @staticmethod
    def parse(token: str) -> Tuple[str, int]:
        parsed = LockToken.parse(token)
        return parsed.host, parsed.pid

    def is_owner_alive(self, host: str, pid: int, active_hosts: Collection[str]) -> bool:
        """Best-effort liveness of a lock owner.

        A host missing from ``active_hosts`` is dead. Processes can only be
        probed on this host; a process on another live host is presumed alive.
        """
        if host not in active_hosts:
            return False
        if host == self.hostname:
            return process_exists(pid)
        return True
