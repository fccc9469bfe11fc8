"""Agent-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Topic(str, Enum):
    """EventBus topics."""

    TRANSITION = "transition"
    ISSUE = "issue"
    INTERVENTION = "intervention"
    COMMAND = "command"


class AgentStatus(str, Enum):
    """Health status of a supervised agent."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    STUCK = "stuck"
    FAILED = "failed"
    RESTARTING = "restarting"
    ISOLATED = "isolated"


@dataclass
class ResourceLimits:
    """Resource envelope an agent is expected to stay within."""

    memory: float | None = None  # MB
    cpu: float | None = None  # cores
    rate_limit: float | None = None  # requests per second


@dataclass
class Agent:
    """A supervised worker agent."""

    id: str
    type: str
    dependencies: set[str] = field(default_factory=set)
    resource_limits: ResourceLimits = field(default_factory=ResourceLimits)
    registered_at: datetime | None = None
    health_url: str | None = None  # polled ingress
    command_url: str | None = None  # HTTP command egress


@dataclass
class BusMessage:
    """A message exchanged through EventBus."""

    id: str
    topic: Topic
    payload: dict  # varies by topic
    source: str  # component that published
    timestamp: datetime
