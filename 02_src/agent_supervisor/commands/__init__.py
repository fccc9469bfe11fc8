"""Agent command egress module."""

from .sink import AgentCommand, AgentCommandSink, CommandKind, HTTPCommandSink

__all__ = ["AgentCommand", "AgentCommandSink", "CommandKind", "HTTPCommandSink"]
