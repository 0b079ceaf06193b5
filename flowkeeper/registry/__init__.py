"""Registry mapping stored workflow type tags to workflow classes."""

from __future__ import annotations

from typing import Dict, List, Type

from ..contracts import BaseWorkflow
from ..errors import UnknownWorkflowTypeError


class WorkflowRegistry:
    """Known workflow types.

    ``register`` doubles as a class decorator::

        @REGISTRY.register
        class OrderWorkflow(BaseWorkflow):
            workflow_type = "order"
    """

    def __init__(self) -> None:
        self._factories: Dict[str, Type[BaseWorkflow]] = {}

    def register(self, cls: Type[BaseWorkflow]) -> Type[BaseWorkflow]:
        tag = cls.workflow_type or cls.__name__
        existing = self._factories.get(tag)
        if existing is not None and existing is not cls:
            raise ValueError(
                f"Workflow type '{tag}' already registered by {existing.__qualname__}"
            )
        self._factories[tag] = cls
        return cls

    def create(self, workflow_type: str) -> BaseWorkflow:
        """Return a fresh, empty instance for ``workflow_type``."""
        try:
            cls = self._factories[workflow_type]
        except KeyError:
            raise UnknownWorkflowTypeError(workflow_type) from None
        return cls()

    def types(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, workflow_type: object) -> bool:
        return workflow_type in self._factories


# Default registry used when a store is not handed one explicitly.
REGISTRY = WorkflowRegistry()


def register_workflow(cls: Type[BaseWorkflow]) -> Type[BaseWorkflow]:
    """Add ``cls`` to ``REGISTRY``."""
    return REGISTRY.register(cls)


__all__ = ["REGISTRY", "WorkflowRegistry", "register_workflow"]
