"""Supervisor error taxonomy."""


class SupervisorError(Exception):
    """Base class for supervisor errors."""


class UnknownAgent(SupervisorError):
    """Operation referenced an agent that is not registered."""

    def __init__(self, agent_id: str):
        super().__init__(f"Unknown agent: {agent_id}")
        self.agent_id = agent_id


class InterventionTimeout(SupervisorError):
    """A remediation step did not complete within its level timeout."""

    def __init__(self, agent_id: str, level: int, timeout_s: float):
        super().__init__(
            f"Level {level} step for {agent_id} timed out after {timeout_s}s"
        )
        self.agent_id = agent_id
        self.level = level
        self.timeout_s = timeout_s


class CommandDeliveryFailed(SupervisorError):
    """A command could not be delivered to an agent."""

    def __init__(self, agent_id: str, command: str, reason: str):
        super().__init__(f"Command {command} to {agent_id} failed: {reason}")
        self.agent_id = agent_id
        self.command = command
        self.reason = reason


class CircuitOpenRejected(SupervisorError):
    """Traffic was short-circuited by an open breaker."""

    def __init__(self, agent_id: str, operation_class: str = "default"):
        super().__init__(f"Circuit open for {agent_id} ({operation_class})")
        self.agent_id = agent_id
        self.operation_class = operation_class


class EscalationExhausted(SupervisorError):
    """Level 4 reached; automated remediation is over and a human owns it."""

    def __init__(self, agent_id: str, issue_id: str):
        super().__init__(f"Escalation exhausted for {agent_id} (issue {issue_id})")
        self.agent_id = agent_id
        self.issue_id = issue_id


class InterventionConflict(SupervisorError):
    """Requested manual level would move an active chain backwards."""
