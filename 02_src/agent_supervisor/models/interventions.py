"""Intervention and circuit breaker data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Outcome(str, Enum):
    """How an intervention level ended."""

    RESOLVED = "resolved"
    ESCALATED = "escalated"
    FAILED = "failed"


class BreakerState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class Intervention:
    """Audit record of one escalation level applied to an agent."""

    id: str
    agent_id: str
    triggering_issue_id: str
    level: int
    actions: list[str]
    started_at: datetime
    chain_id: str
    completed_at: datetime | None = None
    outcome: Outcome | None = None
    attempts: int = 0

    @property
    def active(self) -> bool:
        return self.outcome is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "triggering_issue_id": self.triggering_issue_id,
            "chain_id": self.chain_id,
            "level": self.level,
            "actions": list(self.actions),
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "outcome": self.outcome.value if self.outcome else None,
        }


@dataclass
class CircuitBreakerState:
    """Point-in-time view of one breaker."""

    agent_id: str
    operation_class: str
    state: BreakerState
    failure_count: int
    last_failure_at: datetime | None
    next_probe_at: datetime | None
    open_count: int = 0
    held: bool = False


@dataclass
class Escalation:
    """A chain that reached Level 4 and is now owned by a human operator."""

    agent_id: str
    issue_id: str
    chain_id: str
    reason: str
    raised_at: datetime
    extra: dict[str, Any] = field(default_factory=dict)
