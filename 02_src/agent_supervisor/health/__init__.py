"""Health state machine module."""

from .signals import (
    critical_resources,
    meets_recovery,
    rolling_error_rate,
    sustained_breaches,
)
from .state_machine import HealthStateMachine, Transition

__all__ = [
    "HealthStateMachine",
    "Transition",
    "critical_resources",
    "meets_recovery",
    "rolling_error_rate",
    "sustained_breaches",
]
