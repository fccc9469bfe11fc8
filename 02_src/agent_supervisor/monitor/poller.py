"""Pull-based ingress for agents that expose a health endpoint."""

import asyncio
from typing import Any

import httpx

from ..config import Clock, Settings, utc_now
from ..errors import UnknownAgent
from ..logging_config import get_logger
from ..models import Agent, HealthSnapshot
from ..registry import Registry
from .supervisor import Supervisor

logger = get_logger(__name__)


class HealthPoller:
    """Polls every agent with a ``health_url`` once per heartbeat interval.

    A failed poll is not reported; heartbeat silence handles unreachable agents.
    """

    def __init__(
        self,
        supervisor: Supervisor,
        registry: Registry,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ):
        self._supervisor = supervisor
        self._registry = registry
        self._settings = settings
        self._client = client or httpx.AsyncClient(timeout=settings.heartbeat_interval_s / 2)
        self._owns_client = client is None
        self._clock = clock or utc_now
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Health poller started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client:
            await self._client.aclose()

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.poll_all()
                await asyncio.sleep(self._settings.heartbeat_interval_s)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Health poll failed: {e}", exc_info=True)

    async def poll_all(self) -> int:
        """Poll every pollable agent concurrently. Returns the number reported."""
        agents = [agent for agent in self._registry.agents() if agent.health_url]
        results = await asyncio.gather(*(self.poll(agent) for agent in agents))
        return sum(1 for reported in results if reported)

    async def poll(self, agent: Agent) -> bool:
        try:
            response = await self._client.get(agent.health_url)
            response.raise_for_status()
            data: dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Health poll of %s failed: %s", agent.id, e, extra={"agent_id": agent.id}
            )
            return False

        data.setdefault("timestamp", self._clock())
        snapshot = HealthSnapshot.from_dict(agent.id, data)
        try:
            await self._supervisor.report_health(agent.id, snapshot)
        except UnknownAgent:
            # Deregistered while the request was in flight
            return False
        return True
