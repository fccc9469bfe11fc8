"""Intervention engine module."""

from .engine import IInterventionEngine, InterventionEngine
from .notifier import IOperatorNotifier, LogNotifier, WebhookNotifier
from .policy import DEFAULT_LEVELS, MAX_LEVEL, ActionSpec, EscalationPolicy, LevelPolicy

__all__ = [
    "ActionSpec",
    "DEFAULT_LEVELS",
    "EscalationPolicy",
    "IInterventionEngine",
    "IOperatorNotifier",
    "InterventionEngine",
    "LevelPolicy",
    "LogNotifier",
    "MAX_LEVEL",
    "WebhookNotifier",
]
