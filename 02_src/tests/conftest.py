"""Pytest configuration and fixtures."""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from agent_supervisor.commands import AgentCommand  # noqa: E402
from agent_supervisor.errors import CommandDeliveryFailed  # noqa: E402

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingCommandSink:
    """Command sink that records deliveries and can be told to fail."""

    def __init__(self):
        self.commands: list[AgentCommand] = []
        self.fail = False
        self.hang = False
        self.received = asyncio.Event()

    async def send(self, command: AgentCommand) -> None:
        if self.hang:
            await asyncio.sleep(3600)
        if self.fail:
            raise CommandDeliveryFailed(command.agent_id, command.kind.value, "refused")
        self.commands.append(command)
        self.received.set()

    async def close(self) -> None:
        pass

    def actions(self, agent_id: str | None = None) -> list[str]:
        return [
            c.params.get("action")
            for c in self.commands
            if agent_id is None or c.agent_id == agent_id
        ]


@pytest.fixture
def clock():
    """Manual clock starting at a fixed instant."""
    return ManualClock()


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from agent_supervisor.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def event_bus(storage):
    """Create EventBus with storage."""
    from agent_supervisor.event_bus import EventBus

    eb = EventBus(storage)
    # Don't start automatically - let tests control it
    return eb


@pytest.fixture
def tracker(storage, event_bus):
    """Create Tracker with storage and event bus."""
    from agent_supervisor.tracker import Tracker

    tr = Tracker(event_bus=event_bus, storage=storage)
    return tr


@pytest.fixture
def settings():
    """Default settings."""
    from agent_supervisor.config import Settings

    return Settings()


@pytest.fixture
def registry(storage, settings, clock):
    """Create Registry backed by in-memory storage."""
    from agent_supervisor.registry import Registry

    return Registry(storage, settings, clock)


@pytest.fixture
def state_machine(event_bus, settings, clock):
    """Create HealthStateMachine on the manual clock."""
    from agent_supervisor.health import HealthStateMachine

    return HealthStateMachine(event_bus, settings, clock)


@pytest.fixture
def breakers(settings, clock):
    """Create CircuitBreakerBank on the manual clock."""
    from agent_supervisor.breaker import CircuitBreakerBank

    return CircuitBreakerBank(settings, clock)


@pytest.fixture
def sink():
    """Create recording command sink."""
    return RecordingCommandSink()


@pytest.fixture
def fast_policy():
    """Escalation table with every timeout shrunk to milliseconds."""
    from agent_supervisor.interventions import EscalationPolicy

    return EscalationPolicy().scaled(0.002)


@pytest.fixture
def patient_policy():
    """Escalation table with timeouts long enough to feed recovery snapshots."""
    from agent_supervisor.interventions import EscalationPolicy

    return EscalationPolicy().scaled(0.1)


class RecordingNotifier:
    """Operator notifier that keeps escalations in memory."""

    def __init__(self):
        self.escalations = []

    async def notify(self, escalation) -> None:
        self.escalations.append(escalation)


@pytest.fixture
def notifier():
    """Create recording operator notifier."""
    return RecordingNotifier()


@pytest.fixture
def make_engine(registry, state_machine, breakers, sink, event_bus, storage, notifier, clock):
    """Factory for InterventionEngine with a chosen policy."""
    from agent_supervisor.interventions import InterventionEngine

    def _make(policy):
        engine = InterventionEngine(
            registry=registry,
            state_machine=state_machine,
            breakers=breakers,
            sink=sink,
            event_bus=event_bus,
            storage=storage,
            policy=policy,
            notifier=notifier,
            clock=clock,
        )
        return engine

    return _make


@pytest_asyncio.fixture
async def engine(make_engine, fast_policy):
    """Started InterventionEngine with a fast escalation table."""
    eng = make_engine(fast_policy)
    await eng.start()
    yield eng
    await eng.stop()


@pytest.fixture
def make_supervisor(
    registry, state_machine, breakers, sink, event_bus, storage, tracker, settings, clock
):
    """Factory for Supervisor around a given engine."""
    from agent_supervisor.detection import AnomalyDetector
    from agent_supervisor.monitor import Supervisor
    from agent_supervisor.predictive import PredictiveScorer

    def _make(engine):
        return Supervisor(
            registry=registry,
            state_machine=state_machine,
            detector=AnomalyDetector(clock),
            scorer=PredictiveScorer(settings, clock),
            breakers=breakers,
            engine=engine,
            sink=sink,
            event_bus=event_bus,
            storage=storage,
            tracker=tracker,
            settings=settings,
            clock=clock,
        )

    return _make


@pytest.fixture
def make_snapshot(clock):
    """Factory for snapshots stamped with the manual clock."""
    from agent_supervisor.models import HealthSnapshot, ResourceUsage

    def _make(agent_id: str = "agent-1", memory_pct: float = 20.0, cpu_pct: float = 20.0, **kwargs):
        kwargs.setdefault("timestamp", clock())
        kwargs.setdefault("response_time_ms", 200.0)
        return HealthSnapshot(
            agent_id=agent_id,
            resource_usage=ResourceUsage(memory_pct=memory_pct, cpu_pct=cpu_pct),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_agent():
    """Factory for Agent records."""
    from agent_supervisor.models import Agent

    def _make(agent_id: str = "agent-1", agent_type: str = "worker", **kwargs):
        return Agent(id=agent_id, type=agent_type, **kwargs)

    return _make
