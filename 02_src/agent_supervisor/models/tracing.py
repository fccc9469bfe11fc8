"""Audit trail data models."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TraceEvent:
    """A single append-only audit event."""

    id: str
    event_type: str  # e.g. "status_transition", "issue_raised"
    actor: str  # component that created this event
    data: dict  # self-contained data for post-mortem reconstruction
    timestamp: datetime
