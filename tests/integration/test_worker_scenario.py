"""End to end runs through the worker against a SQLite file."""

import pytest
from sqlalchemy.exc import OperationalError

from flowkeeper import Event, Worker
from flowkeeper.db import EventRow, Status, SubscriptionRow, WorkflowRow


@pytest.mark.asyncio
async def test_order_event_reaches_waiting_workflows(storage, make_workflow, fetch):
    order = make_workflow(regions=["EU"], finish_on_event=True)
    order.schedule_in(3600)
    audit = make_workflow("audit")
    audit.schedule_in(3600)
    await storage.workflows.create(order, unique=True)
    await storage.workflows.create(audit)
    worker = Worker(storage, poll_interval=0.01)

    assert await worker.run_once() == 0

    routed = await storage.events.route(Event(type="order", key_data={"region": "EU"}))
    assert routed.value == 2
    assert await worker.run_once() == 2

    [order_row] = await fetch(WorkflowRow, workflow_id=order.id)
    assert order_row.status == Status.FINISHED
    assert order_row.lock == ""
    subs = await fetch(SubscriptionRow, workflow_id=order.id)
    assert subs and all(s.status == Status.FINISHED for s in subs)

    [audit_row] = await fetch(WorkflowRow, workflow_id=audit.id)
    assert audit_row.status == Status.ACTIVE
    assert audit_row.lock == ""
    assert audit_row.error_count == 0
    reloaded = (await storage.workflows.get(audit.id, lock=False)).value
    assert reloaded.context["seen"] == 1

    events = await fetch(EventRow)
    assert len(events) == 2
    assert all(e.status == Status.PROCESSED for e in events)
    assert await worker.run_once() == 0

    # The fingerprint is released with the finished order.
    assert await storage.workflows.create(make_workflow(customer="42"), unique=True)


@pytest.mark.asyncio
async def test_failing_workflow_is_retired_after_its_error_budget(storage, make_workflow, fetch):
    broken = make_workflow("broken")
    await storage.workflows.create(broken)
    worker = Worker(storage)

    for expected_errors in (1, 2):
        assert await worker.run_once() == 1
        [row] = await fetch(WorkflowRow, workflow_id=broken.id)
        assert row.status == Status.ACTIVE
        assert row.error_count == expected_errors

    assert await worker.run_once() == 1

    [row] = await fetch(WorkflowRow, workflow_id=broken.id)
    assert row.status == Status.FINISHED
    logs = await storage.diagnostics.recent(broken.id)
    assert logs == ["RuntimeError: boom", "RuntimeError: boom"]


@pytest.mark.asyncio
async def test_worker_run_stops_after_lifespan(storage, make_workflow, fetch):
    workflow = make_workflow("audit")
    await storage.workflows.create(workflow)

    await Worker(storage, poll_interval=0.01).run(lifespan=0.2)

    [row] = await fetch(WorkflowRow, workflow_id=workflow.id)
    assert row.lock == ""
    assert row.status == Status.ACTIVE


@pytest.mark.asyncio
async def test_delivered_events_are_closed_before_the_lock_is_released(
    storage, make_workflow, monkeypatch
):
    audit = make_workflow("audit")
    await storage.workflows.create(audit)
    await storage.events.route(Event(type="order", key_data={"region": "EU"}))
    first, second = Worker(storage), Worker(storage)
    save = storage.workflows.save
    handed_over = False

    async def save_then_second_worker(workflow, **kwargs):
        nonlocal handed_over
        result = await save(workflow, **kwargs)
        if not handed_over:
            handed_over = True
            await second.run_once()
        return result

    monkeypatch.setattr(storage.workflows, "save", save_then_second_worker)

    await first.run_once()

    assert handed_over
    reloaded = (await storage.workflows.get(audit.id, lock=False)).value
    assert reloaded.context["seen"] == 1


@pytest.mark.asyncio
async def test_store_error_while_loading_events_releases_the_lock(
    storage, make_workflow, fetch, monkeypatch
):
    audit = make_workflow("audit")
    await storage.workflows.create(audit)

    async def locked(*args, **kwargs):
        raise OperationalError("SELECT event", {}, Exception("database is locked"))

    monkeypatch.setattr(storage.events, "events_for", locked)

    assert await Worker(storage).run_once() == 1

    [row] = await fetch(WorkflowRow, workflow_id=audit.id)
    assert row.lock == ""
    assert row.status == Status.ACTIVE
    assert row.error_count == 1


@pytest.mark.asyncio
async def test_worker_keeps_polling_after_store_error(storage, make_workflow, fetch, monkeypatch):
    audit = make_workflow("audit")
    await storage.workflows.create(audit)
    list_due = storage.workflows.list_due
    calls = 0

    async def flaky_list_due(*args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise OperationalError("SELECT workflow", {}, Exception("database is locked"))
        return await list_due(*args, **kwargs)

    monkeypatch.setattr(storage.workflows, "list_due", flaky_list_due)

    await Worker(storage, poll_interval=0.01).run(lifespan=0.2)

    assert calls > 1
    reloaded = (await storage.workflows.get(audit.id, lock=False)).value
    assert "seen" in reloaded.context


@pytest.mark.asyncio
async def test_events_beyond_one_batch_wake_the_workflow_again(storage, make_workflow, fetch):
    audit = make_workflow("audit")
    audit.schedule_in(3600)
    await storage.workflows.create(audit)
    for _ in range(4):
        await storage.events.route(Event(type="order"))
    worker = Worker(storage)
    worker.event_limit = 3

    assert await worker.run_once() == 1

    assert len(await fetch(EventRow, status=Status.ACTIVE)) == 1
    assert await storage.workflows.list_due() == [audit.id]

    assert await worker.run_once() == 1

    assert await fetch(EventRow, status=Status.ACTIVE) == []
    assert await storage.workflows.list_due() == []
    reloaded = (await storage.workflows.get(audit.id, lock=False)).value
    assert reloaded.context["seen"] == 4
