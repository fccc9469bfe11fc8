"""Egress command channel to supervised agents."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import httpx

from ..errors import CommandDeliveryFailed
from ..logging_config import get_logger

logger = get_logger(__name__)


class CommandKind(str, Enum):
    """Commands an agent transport must understand."""

    GRACEFUL_STOP = "graceful_stop"
    FORCE_RESTART = "force_restart"
    PARAMETER_UPDATE = "parameter_update"
    RESOURCE_LIMIT = "resource_limit"
    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    CIRCUIT_BREAKER_CLOSE = "circuit_breaker_close"


@dataclass
class AgentCommand:
    """A single command addressed to one agent."""

    agent_id: str
    kind: CommandKind
    params: dict[str, Any] = field(default_factory=dict)
    target_url: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "kind": self.kind.value,
            "params": self.params,
            "issued_at": self.issued_at.isoformat(),
        }


class AgentCommandSink(Protocol):
    """Delivers commands over whatever transport the agents expose."""

    async def send(self, command: AgentCommand) -> None:
        """Deliver a command. Raises CommandDeliveryFailed on failure."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        ...


class HTTPCommandSink:
    """POSTs commands as JSON to each agent's command callback URL."""

    def __init__(
        self,
        timeout_s: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def send(self, command: AgentCommand) -> None:
        """POST the command; any transport error or non-2xx is a delivery failure."""
        if not command.target_url:
            raise CommandDeliveryFailed(
                command.agent_id, command.kind.value, "no command_url registered"
            )

        try:
            response = await self._client.post(command.target_url, json=command.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Command %s to %s failed: %s",
                command.kind.value,
                command.agent_id,
                e,
                extra={"agent_id": command.agent_id},
            )
            raise CommandDeliveryFailed(
                command.agent_id, command.kind.value, str(e)
            ) from e

        logger.info(
            "Command %s delivered to %s",
            command.kind.value,
            command.agent_id,
            extra={"agent_id": command.agent_id},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
