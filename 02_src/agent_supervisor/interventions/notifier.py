"""Human operator notification for exhausted escalations."""

from typing import Protocol

import httpx

from ..logging_config import get_logger
from ..models import Escalation

logger = get_logger(__name__)


class IOperatorNotifier(Protocol):
    """Hands a Level-4 escalation to a human."""

    async def notify(self, escalation: Escalation) -> None:
        ...


class LogNotifier:
    """Writes escalations to the log at CRITICAL level."""

    async def notify(self, escalation: Escalation) -> None:
        logger.critical(
            "Human escalation required for %s: %s (issue %s)",
            escalation.agent_id,
            escalation.reason,
            escalation.issue_id,
            extra={"agent_id": escalation.agent_id},
        )


class WebhookNotifier:
    """POSTs escalations to an operator webhook, falling back to the log."""

    def __init__(self, url: str, timeout_s: float = 10.0):
        self._url = url
        self._timeout_s = timeout_s
        self._fallback = LogNotifier()

    async def notify(self, escalation: Escalation) -> None:
        await self._fallback.notify(escalation)
        payload = {
            "agent_id": escalation.agent_id,
            "issue_id": escalation.issue_id,
            "chain_id": escalation.chain_id,
            "reason": escalation.reason,
            "raised_at": escalation.raised_at.isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(self._url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "Operator webhook failed for %s: %s",
                escalation.agent_id,
                e,
                extra={"agent_id": escalation.agent_id},
            )
