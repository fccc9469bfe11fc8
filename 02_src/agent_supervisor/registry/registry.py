"""Agent registry: the single source of truth for registrations and live state."""

import asyncio
import bisect
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Protocol

from ..config import Clock, Settings, Thresholds, utc_now
from ..errors import UnknownAgent
from ..logging_config import get_logger
from ..models import Agent, AgentStatus, HealthSnapshot
from ..storage import IStorage

logger = get_logger(__name__)


@dataclass
class AgentEntry:
    """Live state for one registered agent.

    All mutation goes through ``lock`` so different agents never contend.
    """

    agent: Agent
    thresholds: Thresholds
    history: deque[HealthSnapshot]
    queue: asyncio.Queue
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    status: AgentStatus = AgentStatus.HEALTHY
    status_since: datetime | None = None
    last_heartbeat_at: datetime | None = None
    recovery_streak: int = 0
    # Rolling error rate only looks at snapshots at or after this instant
    rate_epoch: datetime | None = None
    recovery_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def agent_id(self) -> str:
        return self.agent.id

    @property
    def latest(self) -> HealthSnapshot | None:
        return self.history[-1] if self.history else None

    def add_snapshot(self, snapshot: HealthSnapshot) -> bool:
        """Insert a snapshot in timestamp order. Returns True if it is the newest."""
        if not self.history or snapshot.timestamp >= self.history[-1].timestamp:
            self.history.append(snapshot)
            return True

        timestamps = [s.timestamp for s in self.history]
        index = bisect.bisect_right(timestamps, snapshot.timestamp)
        if len(self.history) == self.history.maxlen:
            if index == 0:
                # Older than everything retained
                return False
            self.history.popleft()
            index -= 1
        self.history.insert(index, snapshot)
        return False

    def window(self, since: datetime | None = None) -> list[HealthSnapshot]:
        """Snapshots at or after ``since`` (all if None)."""
        if since is None:
            return list(self.history)
        return [s for s in self.history if s.timestamp >= since]


class IRegistry(Protocol):
    """Registration and per-agent state lookup."""

    async def register(self, agent: Agent) -> str:
        """Idempotent upsert keyed by agent id."""
        ...

    async def deregister(self, agent_id: str) -> None:
        """Remove an agent."""
        ...

    def require(self, agent_id: str) -> AgentEntry:
        """Get an entry or raise UnknownAgent."""
        ...


class Registry:
    """In-memory registry backed by Storage for registrations."""

    def __init__(
        self,
        storage: IStorage,
        settings: Settings,
        clock: Clock | None = None,
    ):
        self._storage = storage
        self._settings = settings
        self._clock = clock or utc_now
        self._entries: dict[str, AgentEntry] = {}

    async def load(self) -> None:
        """Restore registrations persisted by a previous run."""
        for agent in await self._storage.get_agents():
            self._entries[agent.id] = self._new_entry(agent)
        logger.info("Registry loaded %s agents", len(self._entries))

    def _new_entry(self, agent: Agent) -> AgentEntry:
        now = self._clock()
        return AgentEntry(
            agent=agent,
            thresholds=self._settings.thresholds_for(agent.type),
            history=deque(maxlen=self._settings.history_size),
            queue=asyncio.Queue(maxsize=self._settings.ingress_queue_size),
            status_since=now,
            # Silence is measured from registration until the first heartbeat
            last_heartbeat_at=now,
            rate_epoch=None,
        )

    async def register(self, agent: Agent) -> str:
        """Idempotent upsert keyed by agent id. Returns the agent id."""
        entry = self._entries.get(agent.id)
        if entry is None:
            if agent.registered_at is None:
                agent = replace(agent, registered_at=self._clock())
            self._entries[agent.id] = self._new_entry(agent)
            logger.info("Agent registered: %s (%s)", agent.id, agent.type)
        else:
            async with entry.lock:
                agent = replace(agent, registered_at=entry.agent.registered_at)
                entry.agent = agent
                entry.thresholds = self._settings.thresholds_for(agent.type)
            logger.info("Agent re-registered: %s (%s)", agent.id, agent.type)

        await self._storage.save_agent(agent)
        return agent.id

    async def deregister(self, agent_id: str) -> None:
        """Remove an agent. Raises UnknownAgent if it is not registered."""
        if agent_id not in self._entries:
            raise UnknownAgent(agent_id)
        del self._entries[agent_id]
        await self._storage.delete_agent(agent_id)
        logger.info("Agent deregistered: %s", agent_id)

    def get(self, agent_id: str) -> AgentEntry | None:
        return self._entries.get(agent_id)

    def require(self, agent_id: str) -> AgentEntry:
        """Get an entry or raise UnknownAgent."""
        entry = self._entries.get(agent_id)
        if entry is None:
            raise UnknownAgent(agent_id)
        return entry

    def entries(self) -> list[AgentEntry]:
        return list(self._entries.values())

    def agents(self) -> list[Agent]:
        return [entry.agent for entry in self._entries.values()]

    def dependency_graph(self) -> dict[str, set[str]]:
        """Adjacency map of declared dependencies."""
        return {
            agent_id: set(entry.agent.dependencies)
            for agent_id, entry in self._entries.items()
        }

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
