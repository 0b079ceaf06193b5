from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every table."""
    return datetime.now(tz=UTC).replace(tzinfo=None)
