"""Registry module."""

from .registry import AgentEntry, IRegistry, Registry

__all__ = ["AgentEntry", "IRegistry", "Registry"]
