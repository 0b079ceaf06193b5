import pytest

from flowkeeper import ErrorKind, Event
from flowkeeper.db import UNIQUENESS, EventRow, Status


@pytest.mark.asyncio
async def test_route_fans_out_one_row_per_subscriber(storage, make_workflow, fetch):
    subscribers = [make_workflow(customer=str(i)) for i in range(3)]
    bystander = make_workflow(regions="US")
    for workflow in subscribers + [bystander]:
        await storage.workflows.create(workflow)

    routed = await storage.events.route(
        Event(type="order", context='{"id": 1}', key_data={"region": "EU"})
    )

    assert routed.value == 3
    rows = await fetch(EventRow)
    assert sorted(r.workflow_id for r in rows) == sorted(w.id for w in subscribers)
    assert all(r.status == Status.ACTIVE for r in rows)
    assert all(r.context == '{"id": 1}' for r in rows)
    assert await fetch(EventRow, status=Status.NO_SUBSCRIBERS) == []


@pytest.mark.asyncio
async def test_route_without_subscribers_writes_sentinel(storage, make_workflow, fetch):
    await storage.workflows.create(make_workflow(regions="US"))

    routed = await storage.events.route(Event(type="order", key_data={"region": "APAC"}))

    assert routed
    assert routed.value == 0
    [row] = await fetch(EventRow)
    assert row.workflow_id == 0
    assert row.status == Status.NO_SUBSCRIBERS
    assert row.type == "order"


@pytest.mark.asyncio
async def test_wildcard_subscription_matches_once(storage, make_workflow, fetch):
    audit = make_workflow("audit")
    order = make_workflow()
    await storage.workflows.create(audit)
    await storage.workflows.create(order)

    routed = await storage.events.route(
        Event(type="order", key_data={"region": "EU", "channel": "web"})
    )

    assert routed.value == 2
    assert len(await fetch(EventRow, workflow_id=audit.id)) == 1
    assert len(await fetch(EventRow, workflow_id=order.id)) == 1


@pytest.mark.asyncio
async def test_event_without_key_data_reaches_wildcards_only(storage, make_workflow, fetch):
    audit = make_workflow("audit")
    await storage.workflows.create(audit)
    await storage.workflows.create(make_workflow())

    routed = await storage.events.route(Event(type="order"))

    assert routed.value == 1
    [row] = await fetch(EventRow)
    assert row.workflow_id == audit.id


@pytest.mark.asyncio
async def test_finished_workflows_stop_matching(storage, make_workflow, fetch):
    workflow = make_workflow()
    await storage.workflows.create(workflow)
    await storage.workflows.finish(workflow.id)

    routed = await storage.events.route(Event(type="order", key_data={"region": "EU"}))

    assert routed.value == 0
    [row] = await fetch(EventRow)
    assert row.status == Status.NO_SUBSCRIBERS


@pytest.mark.asyncio
async def test_uniqueness_rows_are_never_routed(storage, make_workflow, fetch):
    await storage.workflows.create(make_workflow(customer="42"), unique=True)

    refused = await storage.events.route(Event(type=UNIQUENESS, key_data={"customer": "42"}))

    assert not refused
    assert refused.error is ErrorKind.TRANSACTION
    assert await fetch(EventRow) == []


@pytest.mark.asyncio
async def test_events_for_and_close(storage, make_workflow):
    workflow = make_workflow()
    await storage.workflows.create(workflow)
    await storage.events.route(Event(type="order", context="a", key_data={"region": "EU"}))
    await storage.events.route(Event(type="order", context="b", key_data={"region": "EU"}))

    events = await storage.events.events_for(workflow.id)

    assert [e.context for e in events] == ["a", "b"]
    assert all(e.workflow_id == workflow.id for e in events)

    assert await storage.events.close(events[0].event_id)
    assert [e.context for e in await storage.events.events_for(workflow.id)] == ["b"]
    assert (await storage.events.close(9999)).error is ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_row_limit_caps_each_pass(storage, make_workflow, fetch):
    for i in range(3):
        await storage.workflows.create(make_workflow(customer=str(i)))
    storage.events.row_limit = 2

    routed = await storage.events.route(Event(type="order", key_data={"region": "EU"}))

    assert routed.value == 2
    assert len(await fetch(EventRow)) == 2
