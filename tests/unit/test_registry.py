import pytest

from flowkeeper import BaseWorkflow, ErrorKind, Result, SubscriptionFilter, WorkflowRegistry
from flowkeeper.errors import UnknownWorkflowTypeError


class PingWorkflow(BaseWorkflow):
    workflow_type = "ping"

    async def run(self, events):
        self.finish()


def test_register_and_create():
    registry = WorkflowRegistry()
    assert registry.register(PingWorkflow) is PingWorkflow

    workflow = registry.create("ping")

    assert isinstance(workflow, PingWorkflow)
    assert workflow.id is None
    assert "ping" in registry
    assert registry.types() == ["ping"]


def test_unknown_type():
    with pytest.raises(UnknownWorkflowTypeError) as exc_info:
        WorkflowRegistry().create("nope")
    assert exc_info.value.workflow_type == "nope"


def test_conflicting_registration():
    registry = WorkflowRegistry()
    registry.register(PingWorkflow)
    registry.register(PingWorkflow)

    class OtherPing(BaseWorkflow):
        workflow_type = "ping"

        async def run(self, events):
            pass

    with pytest.raises(ValueError):
        registry.register(OtherPing)


def test_state_round_trip():
    workflow = PingWorkflow({"count": 3})
    workflow.finish()

    restored = PingWorkflow()
    restored.set_state(workflow.get_state())

    assert restored.context == {"count": 3}
    assert restored.is_finished()


def test_error_budget():
    workflow = PingWorkflow()
    assert not workflow.many_errors(PingWorkflow.max_errors)
    assert workflow.many_errors(PingWorkflow.max_errors + 1)


def test_subscription_filter_values():
    assert SubscriptionFilter(event_type="a").values == [""]
    assert SubscriptionFilter(event_type="a", context_key="k", context_value="v").values == ["v"]
    assert SubscriptionFilter(
        event_type="a", context_key="k", context_value=["v", "w"]
    ).values == ["v", "w"]


def test_result_truthiness():
    ok = Result.success(5)
    failed = Result.failure(ErrorKind.CONTENTION)

    assert ok and ok.ok and ok.value == 5
    assert not failed
    assert failed.value is None
    assert failed.error is ErrorKind.CONTENTION
