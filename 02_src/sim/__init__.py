"""Virtual fleet simulator."""

from .sim import ISim, Sim, VirtualAgent, default_fleet

__all__ = ["ISim", "Sim", "VirtualAgent", "default_fleet"]
