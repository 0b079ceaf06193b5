from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from flowkeeper import BaseWorkflow, FlowkeeperConfig, SubscriptionFilter, WorkflowRegistry
from flowkeeper.db import Database
from flowkeeper.storage import Storage

HOSTNAME = "test-host"


class OrderWorkflow(BaseWorkflow):
    """Waits for ``order`` events of its regions; finishes on one if asked to."""

    workflow_type = "order"

    def subscriptions(self):
        return [
            SubscriptionFilter(
                event_type="order",
                context_key="region",
                context_value=self.context.get("regions", "EU"),
            )
        ]

    def uniqueness(self):
        return "customer", str(self.context.get("customer", "42"))

    async def run(self, events):
        self.context["seen"] = self.context.get("seen", 0) + len(events)
        if events and self.context.get("finish_on_event"):
            self.finish()


class AuditWorkflow(BaseWorkflow):
    """Subscribes to every ``order`` event regardless of context."""

    workflow_type = "audit"

    def subscriptions(self):
        return [SubscriptionFilter(event_type="order")]

    async def run(self, events):
        self.context["seen"] = self.context.get("seen", 0) + len(events)


class BrokenWorkflow(BaseWorkflow):
    workflow_type = "broken"
    max_errors = 2

    async def run(self, events):
        raise RuntimeError("boom")


@pytest.fixture
def registry() -> WorkflowRegistry:
    registry = WorkflowRegistry()
    for cls in (OrderWorkflow, AuditWorkflow, BrokenWorkflow):
        registry.register(cls)
    return registry


@pytest.fixture
def make_workflow(registry):
    def factory(workflow_type: str = "order", **context: Any) -> BaseWorkflow:
        workflow = registry.create(workflow_type)
        workflow.context.update(context)
        return workflow

    return factory


@pytest_asyncio.fixture
async def storage(tmp_path, registry):
    config = FlowkeeperConfig(hostname=HOSTNAME)
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'flow.db'}")
    storage = Storage(db, config=config, registry=registry)
    await storage.init_db()
    yield storage
    await storage.close()


@pytest.fixture
def fetch(storage):
    """Read raw rows of ``model`` matching column equality filters."""

    async def _fetch(model, **filters):
        stmt = select(model).filter_by(**filters)
        async with storage.db.connect() as conn:
            return (await conn.execute(stmt)).all()

    return _fetch


@pytest.fixture
def patch_row(storage):
    """Overwrite columns of one row directly, bypassing the components."""

    async def _patch(model, key_column, key, **values):
        stmt = update(model).where(key_column == key).values(**values)
        async with storage.db.transaction() as conn:
            await conn.execute(stmt)

    return _patch
