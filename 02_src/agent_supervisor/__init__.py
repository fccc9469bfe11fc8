"""Agent supervision control plane."""

from .app import Application, IApplication
from .breaker import CircuitBreaker, CircuitBreakerBank
from .commands import AgentCommand, AgentCommandSink, CommandKind, HTTPCommandSink
from .config import Settings, Thresholds
from .detection import AnomalyDetector
from .errors import (
    CircuitOpenRejected,
    CommandDeliveryFailed,
    EscalationExhausted,
    InterventionConflict,
    InterventionTimeout,
    SupervisorError,
    UnknownAgent,
)
from .event_bus import EventBus, IEventBus
from .health import HealthStateMachine
from .interventions import EscalationPolicy, InterventionEngine
from .models import (
    Agent,
    AgentStatus,
    BusMessage,
    HealthSnapshot,
    Intervention,
    Issue,
    IssueType,
    ResourceLimits,
    ResourceUsage,
    Severity,
    Topic,
    TraceEvent,
)
from .monitor import HealthPoller, Supervisor
from .predictive import PredictiveScorer
from .query import QueryService
from .registry import Registry
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

__all__ = [
    # Application
    "Application",
    "IApplication",
    "Settings",
    "Thresholds",
    # Models
    "Agent",
    "AgentStatus",
    "BusMessage",
    "HealthSnapshot",
    "Intervention",
    "Issue",
    "IssueType",
    "ResourceLimits",
    "ResourceUsage",
    "Severity",
    "Topic",
    "TraceEvent",
    # Errors
    "SupervisorError",
    "UnknownAgent",
    "InterventionTimeout",
    "CommandDeliveryFailed",
    "CircuitOpenRejected",
    "EscalationExhausted",
    "InterventionConflict",
    # Components
    "IStorage",
    "Storage",
    "IEventBus",
    "EventBus",
    "ITracker",
    "Tracker",
    "Registry",
    "HealthStateMachine",
    "AnomalyDetector",
    "CircuitBreaker",
    "CircuitBreakerBank",
    "AgentCommand",
    "AgentCommandSink",
    "CommandKind",
    "HTTPCommandSink",
    "EscalationPolicy",
    "InterventionEngine",
    "PredictiveScorer",
    "Supervisor",
    "HealthPoller",
    "QueryService",
]
