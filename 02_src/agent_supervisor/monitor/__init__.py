"""Metric ingress and monitoring loops."""

from .poller import HealthPoller
from .supervisor import ISupervisor, Supervisor

__all__ = ["HealthPoller", "ISupervisor", "Supervisor"]
