from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel

from ..utils.clock import utcnow

# Timestamps are naive UTC; see utils.clock.utcnow.

#: Reserved subscription event type marking a uniqueness fingerprint.
UNIQUENESS = "UNIQUENESS"

#: Subscription key/value meaning "any event of this type".
EMPTY = ""


class Status:
    """Status strings stored in the workflow, event and subscription tables."""

    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    FINISHED = "FINISHED"
    PROCESSED = "PROCESSED"
    NO_SUBSCRIBERS = "NO_SUBSCRIBERS"


class WorkflowRow(SQLModel, table=True):
    """A resumable unit of work; ``lock`` is empty while unowned."""

    __tablename__ = "workflow"

    workflow_id: Optional[int] = Field(default=None, primary_key=True)
    type: str = Field(index=True)
    context: str = Field(default="", sa_column=Column(Text, nullable=False))
    scheduled_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, index=True, default=utcnow),
    )
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))
    status: str = Field(default=Status.ACTIVE, index=True)
    lock: str = Field(default="")
    error_count: int = 0


class EventRow(SQLModel, table=True):
    """One delivery of an event to a subscribing workflow."""

    __tablename__ = "event"

    event_id: Optional[int] = Field(default=None, primary_key=True)
    type: str
    context: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str = Field(default=Status.ACTIVE)
    workflow_id: int = Field(default=0, index=True)
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime, nullable=False, default=utcnow)
    )
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime))


class SubscriptionRow(SQLModel, table=True):
    """Standing interest of a workflow in events matching a filter."""

    __tablename__ = "subscription"
    __table_args__ = (
        Index("ix_subscription_match", "event_type", "context_key", "context_value"),
        Index(
            "ux_subscription_uniqueness",
            "event_type",
            "context_key",
            "context_value",
            unique=True,
            sqlite_where=text(f"event_type = '{UNIQUENESS}' AND status = '{Status.ACTIVE}'"),
            postgresql_where=text(
                f"event_type = '{UNIQUENESS}' AND status = '{Status.ACTIVE}'"
            ),
        ),
    )

    subscription_id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: int = Field(index=True)
    status: str = Field(default=Status.ACTIVE)
    event_type: str
    context_key: str = Field(default=EMPTY)
    context_value: str = Field(default=EMPTY)


class HostRow(SQLModel, table=True):
    """Heartbeat of a worker host."""

    __tablename__ = "host"

    hostname: str = Field(primary_key=True)
    updated_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime, nullable=False, default=utcnow)
    )


class LogRow(SQLModel, table=True):
    """Append-only diagnostic line."""

    __tablename__ = "log"

    log_id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: int = Field(default=0, index=True)
    log_text: str = Field(sa_column=Column(Text, nullable=False))
    pid: int = 0
    host: str = ""
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime, nullable=False, default=utcnow)
    )


TABLES = ["workflow", "event", "subscription", "host", "log"]
