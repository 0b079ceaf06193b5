"""Contracts between the storage core and the workflows it runs."""

from __future__ import annotations

import abc
import json
from datetime import datetime, timedelta
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from .db.models import EMPTY, Status
from .utils.clock import utcnow


class SubscriptionFilter(BaseModel):
    """Event filter a workflow waits on.

    ``context_value`` may list several acceptable values; each one is stored as
    its own subscription row. Leaving key and value empty matches every event
    of ``event_type``.
    """

    event_type: str
    context_key: str = EMPTY
    context_value: Union[str, List[str]] = EMPTY

    @property
    def values(self) -> List[str]:
        if isinstance(self.context_value, list):
            return list(self.context_value)
        return [self.context_value]


class Event(BaseModel):
    """An occurrence routed to subscribed workflows."""

    event_id: Optional[int] = None
    type: str
    context: str = ""
    key_data: Dict[str, str] = Field(default_factory=dict)
    workflow_id: Optional[int] = None
    status: str = Status.ACTIVE
    created_at: Optional[datetime] = None


class BaseWorkflow(metaclass=abc.ABCMeta):
    """Behaviour side of a stored workflow.

    Subclasses set ``workflow_type`` (the tag stored in the ``workflow`` table)
    and implement :meth:`run`. State defaults to the JSON encoding of
    ``self.context``; override :meth:`get_state` and :meth:`set_state` for
    another format.
    """

    workflow_type: ClassVar[str] = ""
    max_errors: ClassVar[int] = 20

    def __init__(self, context: Optional[Dict[str, Any]] = None) -> None:
        self.id: Optional[int] = None
        self.context: Dict[str, Any] = dict(context or {})
        self.scheduled_at: datetime = utcnow()
        self._finished = False
        self._error = False

    @property
    def type(self) -> str:
        return self.workflow_type or type(self).__name__

    # ------------------------------------------------------------------
    # State
    def get_state(self) -> str:
        return json.dumps(
            {"context": self.context, "finished": self._finished}, sort_keys=True
        )

    def set_state(self, state: str) -> None:
        data = json.loads(state) if state else {}
        self.context = data.get("context", {})
        self._finished = data.get("finished", False)

    # ------------------------------------------------------------------
    # Routing
    def subscriptions(self) -> List[SubscriptionFilter]:
        """Filters to register when the workflow is created."""
        return []

    def uniqueness(self) -> Optional[Tuple[str, str]]:
        """``(key, value)`` fingerprint used by unique creation."""
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    def finish(self) -> None:
        self._finished = True

    def is_finished(self) -> bool:
        return self._finished

    def mark_error(self) -> None:
        self._error = True

    def is_error(self) -> bool:
        return self._error

    def many_errors(self, error_count: int) -> bool:
        """Whether ``error_count`` lock acquisitions without a clean run exceed the budget."""
        return error_count > self.max_errors

    def schedule_in(self, seconds: float) -> None:
        self.scheduled_at = utcnow() + timedelta(seconds=seconds)

    @abc.abstractmethod
    async def run(self, events: List[Event]) -> None:
        """Advance the workflow; ``events`` are its undelivered events."""
        raise NotImplementedError

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"<{type(self).__name__} id={self.id} type={self.type}>"
