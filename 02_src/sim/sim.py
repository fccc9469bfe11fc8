"""SIM implementation - a virtual fleet driving the supervisor over HTTP."""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from agent_supervisor.logging_config import get_logger
from agent_supervisor.tracker import ITracker

logger = get_logger(__name__)


class ISim(Protocol):
    """Generate heartbeat traffic for a virtual fleet."""

    async def start(self) -> None:
        """Register the fleet and start reporting."""
        ...

    async def stop(self) -> None:
        """Stop reporting."""
        ...


@dataclass
class VirtualAgent:
    """One simulated worker and its behaviour profile.

    healthy: steady low latency and resources.
    looping: keeps reporting the same task.
    leaking: memory grows every report until it saturates.
    flaky: intermittent errors with occasional consecutive runs.
    """

    agent_id: str
    behaviour: str
    agent_type: str = "worker"
    dependencies: list[str] = field(default_factory=list)
    tick: int = 0
    memory_pct: float = 30.0
    consecutive_errors: int = 0

    def next_report(self) -> dict:
        self.tick += 1
        report = {
            "response_time_ms": random.uniform(100, 800),
            "error_count": 0,
            "consecutive_errors": 0,
            "request_count": 20,
            "resource_usage": {
                "memory_pct": self.memory_pct + random.uniform(-2, 2),
                "cpu_pct": random.uniform(10, 40),
            },
            "current_task": f"task-{self.tick}",
            "operation_type": "api_call",
        }

        if self.behaviour == "looping":
            report["current_task"] = "fetch-page-1"
        elif self.behaviour == "leaking":
            self.memory_pct = min(self.memory_pct + 4.0, 99.0)
            report["resource_usage"]["memory_pct"] = self.memory_pct
            report["response_time_ms"] = random.uniform(500, 1500) + self.memory_pct * 30
        elif self.behaviour == "flaky":
            if random.random() < 0.3:
                self.consecutive_errors += 1
                report["error_count"] = random.randint(1, 5)
            else:
                self.consecutive_errors = 0
            report["consecutive_errors"] = self.consecutive_errors
        return report


def default_fleet() -> list[VirtualAgent]:
    return [
        VirtualAgent("sim-healthy-1", "healthy"),
        VirtualAgent("sim-healthy-2", "healthy", dependencies=["sim-healthy-1"]),
        VirtualAgent("sim-looper", "looping"),
        VirtualAgent("sim-leaker", "leaking", agent_type="batch"),
        VirtualAgent("sim-flaky", "flaky"),
    ]


class Sim:
    """SIM with a fixed virtual fleet for testing."""

    def __init__(
        self,
        api_url: str = "http://localhost:8000",
        tracker: ITracker | None = None,
        interval_s: float = 5.0,
        rounds: int = 60,
        fleet: list[VirtualAgent] | None = None,
    ):
        self._api_url = api_url
        self._tracker = tracker
        self._interval_s = interval_s
        self._rounds = rounds
        self._fleet = fleet if fleet is not None else default_fleet()
        self._running = False
        self._task: asyncio.Task | None = None
        self._client: httpx.AsyncClient | None = None

    def set_tracker(self, tracker: ITracker) -> None:
        """Inject tracker for SIM trace events."""
        self._tracker = tracker

    async def start(self) -> None:
        """Register the fleet and start reporting."""
        if self._running:
            return

        self._running = True
        self._client = httpx.AsyncClient(base_url=self._api_url, timeout=10.0)

        # Start background task
        self._task = asyncio.create_task(self._run_scenario())

    async def stop(self) -> None:
        """Stop reporting."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._client:
            await self._client.aclose()
            self._client = None

    async def _run_scenario(self) -> None:
        summary = {
            "scenario": "fleet",
            "agent_count": len(self._fleet),
            "behaviours": sorted({agent.behaviour for agent in self._fleet}),
        }
        try:
            if self._tracker:
                await self._tracker.track("sim_started", "sim", summary)

            for agent in self._fleet:
                await self._register(agent)

            for _ in range(self._rounds):
                if not self._running:
                    break
                await asyncio.gather(*(self._report(agent) for agent in self._fleet))
                await asyncio.sleep(self._interval_s)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("SIM scenario error: %s", e)
        finally:
            if self._tracker:
                await self._tracker.track("sim_completed", "sim", summary)

    async def _register(self, agent: VirtualAgent) -> None:
        if not self._client:
            return
        try:
            response = await self._client.post(
                "/api/agents",
                json={
                    "id": agent.agent_id,
                    "type": agent.agent_type,
                    "dependencies": agent.dependencies,
                },
            )
            response.raise_for_status()
            logger.info("SIM: registered %s (%s)", agent.agent_id, agent.behaviour)
        except httpx.HTTPError as e:
            logger.error("SIM: Failed to register %s: %s", agent.agent_id, e)

    async def _report(self, agent: VirtualAgent) -> None:
        """Send one heartbeat via HTTP API."""
        if not self._client:
            return

        try:
            response = await self._client.post(
                f"/api/agents/{agent.agent_id}/health",
                json=agent.next_report(),
            )

            if response.status_code == 202:
                logger.debug("SIM: heartbeat from %s", agent.agent_id)
            else:
                logger.error(
                    "SIM: Error sending heartbeat for %s: %s",
                    agent.agent_id,
                    response.status_code,
                )

        except httpx.HTTPError as e:
            logger.error("SIM: Failed to send heartbeat: %s", e)
