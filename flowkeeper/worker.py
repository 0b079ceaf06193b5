"""Worker loop: discover due workflows, run them under lock, persist them."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .contracts import BaseWorkflow, Event
from .results import ErrorKind
from .storage import Storage
from .storage.events import EVENT_LIST_LIMIT

logger = logging.getLogger(__name__)


class Worker:
    """Executes due workflows against a shared store.

    Several workers, in one or many processes, may poll the same store; the
    lock taken in :meth:`WorkflowStore.get` guarantees each workflow runs in
    at most one of them at a time.
    """

    def __init__(
        self,
        storage: Storage,
        type_filter: str = "",
        poll_interval: Optional[float] = None,
        reaper_interval: Optional[float] = None,
    ) -> None:
        self._storage = storage
        self.type_filter = type_filter
        self.poll_interval = (
            poll_interval if poll_interval is not None else storage.config.worker.poll_interval
        )
        self.reaper_interval = (
            reaper_interval if reaper_interval is not None else storage.config.reaper.interval
        )
        self.batch_size = storage.config.worker.batch_size
        self.event_limit = EVENT_LIST_LIMIT

    async def run_once(self) -> int:
        """Run every currently due workflow once; returns how many ran."""
        executed = 0
        due = await self._storage.workflows.list_due(self.type_filter, limit=self.batch_size)
        for workflow_id in due:
            loaded = await self._storage.workflows.get(workflow_id)
            if not loaded:
                if loaded.error is not ErrorKind.CONTENTION:
                    logger.warning(f"Skipping workflow {workflow_id}: {loaded.error.value}")
                continue
            await self._execute(loaded.value)
            executed += 1
        return executed

    async def _execute(self, workflow: BaseWorkflow) -> None:
        events: List[Event] = []
        pending = False
        if not workflow.is_finished():
            try:
                events = await self._storage.events.events_for(
                    workflow.id, limit=self.event_limit
                )
            except SQLAlchemyError as exc:
                logger.error(f"Loading events of workflow {workflow.id} failed: {exc}")
                workflow.mark_error()
            else:
                await self._run_workflow(workflow, events)
                pending = len(events) >= self.event_limit

        saved = await self._storage.workflows.save(
            workflow,
            processed_events=[event.event_id for event in events],
            pending_events=pending,
        )
        if not saved:
            logger.error(f"Workflow {workflow.id} could not be saved: {saved.error.value}")

    async def _run_workflow(self, workflow: BaseWorkflow, events: List[Event]) -> None:
        try:
            await workflow.run(events)
        except Exception as exc:
            logger.exception(f"Workflow {workflow.id} ({workflow.type}) raised: {exc}")
            workflow.mark_error()
            await self._storage.diagnostics.store(
                f"{type(exc).__name__}: {exc}", workflow_id=workflow.id
            )

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll until ``lifespan`` seconds have elapsed, or forever when None."""
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        last_sweep: Optional[float] = None

        logger.info(
            f"Worker started on {self._storage.locks.hostname}:{self._storage.locks.pid}"
        )
        while True:
            now = loop.time()
            if lifespan is not None and now - start_time >= lifespan:
                break

            if last_sweep is None or now - last_sweep >= self.reaper_interval:
                last_sweep = now
                try:
                    report = await self._storage.reaper.sweep()
                except SQLAlchemyError as exc:
                    logger.error(f"Reaper sweep failed: {exc}")
                else:
                    if report.stuck:
                        logger.info(
                            f"Reaper restarted {len(report.restarted)} of {report.stuck} stuck workflows"
                        )

            try:
                executed = await self.run_once()
            except SQLAlchemyError as exc:
                logger.error(f"Polling for due workflows failed: {exc}")
                executed = 0
            if not executed:
                await asyncio.sleep(self.poll_interval)
        logger.info("Worker stopped")
