from .database import Database, normalize_database_url
from .models import (
    EMPTY,
    UNIQUENESS,
    EventRow,
    HostRow,
    LogRow,
    Status,
    SubscriptionRow,
    WorkflowRow,
)

__all__ = [
    "Database",
    "normalize_database_url",
    "EMPTY",
    "UNIQUENESS",
    "Status",
    "WorkflowRow",
    "EventRow",
    "SubscriptionRow",
    "HostRow",
    "LogRow",
]
