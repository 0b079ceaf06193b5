"""flowkeeper: workflow storage, event routing and lock coordination on a shared database."""

from .config import FlowkeeperConfig, load_config
from .contracts import BaseWorkflow, Event, SubscriptionFilter
from .registry import REGISTRY, WorkflowRegistry, register_workflow
from .results import ErrorKind, Result
from .storage import Storage, get_storage
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "BaseWorkflow",
    "ErrorKind",
    "Event",
    "FlowkeeperConfig",
    "REGISTRY",
    "Result",
    "Storage",
    "SubscriptionFilter",
    "Worker",
    "WorkflowRegistry",
    "get_storage",
    "load_config",
    "register_workflow",
]
