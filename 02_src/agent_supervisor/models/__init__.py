"""Core data models for the agent supervisor."""

from .agents import Agent, AgentStatus, BusMessage, ResourceLimits, Topic
from .health import HealthSnapshot, ResourceUsage
from .interventions import (
    BreakerState,
    CircuitBreakerState,
    Escalation,
    Intervention,
    Outcome,
)
from .issues import Issue, IssueType, Severity
from .tracing import TraceEvent

__all__ = [
    # Agents
    "Agent",
    "AgentStatus",
    "ResourceLimits",
    "BusMessage",
    "Topic",
    # Health
    "HealthSnapshot",
    "ResourceUsage",
    # Issues
    "Issue",
    "IssueType",
    "Severity",
    # Interventions
    "Intervention",
    "Outcome",
    "BreakerState",
    "CircuitBreakerState",
    "Escalation",
    # Tracing
    "TraceEvent",
]
