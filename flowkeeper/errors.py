"""Exception types for flowkeeper."""

from __future__ import annotations


class FlowkeeperError(Exception):
    """Base class for flowkeeper errors."""


class ConfigurationError(FlowkeeperError):
    """Invalid or unsupported configuration."""


class ConnectivityError(FlowkeeperError):
    """The store could not be reached."""


class SchemaMissingError(FlowkeeperError):
    """Expected tables are absent from the store."""

    def __init__(self, tables: list[str]):
        self.tables = tables
        super().__init__(f"Missing tables: {', '.join(tables)}")


class UnknownWorkflowTypeError(FlowkeeperError):
    """A stored type tag has no registered constructor."""

    def __init__(self, workflow_type: str):
        self.workflow_type = workflow_type
        super().__init__(f"Unknown workflow type '{workflow_type}'")
