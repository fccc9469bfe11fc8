"""Supervisor: metric ingress, per-agent monitor loops and background tickers."""

import asyncio
import contextlib
from dataclasses import replace
from typing import Awaitable, Callable, Protocol

from ..breaker import CircuitBreakerBank
from ..commands import AgentCommand, AgentCommandSink, CommandKind
from ..config import Clock, Settings, utc_now
from ..detection import AnomalyDetector
from ..errors import CommandDeliveryFailed, InterventionConflict
from ..event_bus import IEventBus, build_message
from ..health import HealthStateMachine
from ..interventions import MAX_LEVEL, InterventionEngine
from ..logging_config import get_logger
from ..models import Agent, AgentStatus, HealthSnapshot, Issue, Topic
from ..predictive import PredictiveScorer
from ..registry import AgentEntry, Registry
from ..storage import IStorage
from ..tracker import ITracker

logger = get_logger(__name__)


class ISupervisor(Protocol):
    """Ingress and manual override surface."""

    async def report_health(self, agent_id: str, snapshot: HealthSnapshot) -> None:
        """Enqueue a snapshot. Raises UnknownAgent for unregistered agents."""
        ...

    async def emergency_stop_all(self) -> list[str]:
        """Force every agent into Level 4."""
        ...


class Supervisor:
    """Wires ingress to the state machine, detector, scorer and engine."""

    def __init__(
        self,
        registry: Registry,
        state_machine: HealthStateMachine,
        detector: AnomalyDetector,
        scorer: PredictiveScorer,
        breakers: CircuitBreakerBank,
        engine: InterventionEngine,
        sink: AgentCommandSink,
        event_bus: IEventBus,
        storage: IStorage,
        tracker: ITracker,
        settings: Settings,
        clock: Clock | None = None,
    ):
        self._registry = registry
        self._state_machine = state_machine
        self._detector = detector
        self._scorer = scorer
        self._breakers = breakers
        self._engine = engine
        self._sink = sink
        self._event_bus = event_bus
        self._storage = storage
        self._tracker = tracker
        self._settings = settings
        self._clock = clock or utc_now

        self._monitors: dict[str, asyncio.Task] = {}
        self._tickers: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, run_tickers: bool = True) -> None:
        """Start one monitor per registered agent plus the shared tickers."""
        logger.info("Starting supervisor")
        self._running = True
        for entry in self._registry.entries():
            self._start_monitor(entry)

        if run_tickers:
            self._tickers = [
                asyncio.create_task(
                    self._ticker("evaluation", self._settings.evaluation_tick_s, self.evaluate_all)
                ),
                asyncio.create_task(
                    self._ticker(
                        "dependency", self._settings.dependency_tick_s, self.check_dependencies
                    )
                ),
                asyncio.create_task(
                    self._ticker(
                        "predictive", self._settings.predictive_tick_s, self.run_predictions
                    )
                ),
            ]

    async def stop(self) -> None:
        logger.info("Stopping supervisor")
        self._running = False
        tasks = [*self._tickers, *self._monitors.values()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tickers = []
        self._monitors.clear()

    # Registration

    async def register(self, agent: Agent) -> str:
        """Register (or update) an agent and start monitoring it."""
        agent_id = await self._registry.register(agent)
        entry = self._registry.require(agent_id)
        if self._running:
            self._start_monitor(entry)
        await self._tracker.track(
            event_type="agent_registered",
            actor="registry",
            data={
                "agent_id": agent_id,
                "type": entry.agent.type,
                "dependencies": sorted(entry.agent.dependencies),
            },
        )
        return agent_id

    async def deregister(self, agent_id: str) -> None:
        """Stop monitoring and forget everything held for an agent."""
        self._registry.require(agent_id)
        task = self._monitors.pop(agent_id, None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._engine.forget(agent_id)
        await self._registry.deregister(agent_id)
        self._breakers.remove_agent(agent_id)
        self._detector.forget(agent_id)
        self._scorer.forget(agent_id)
        await self._tracker.track(
            event_type="agent_deregistered",
            actor="registry",
            data={"agent_id": agent_id},
        )

    # Ingress

    async def report_health(self, agent_id: str, snapshot: HealthSnapshot) -> None:
        """Enqueue a snapshot for the agent's monitor.

        Blocks only when the agent's ingress queue is full.
        """
        entry = self._registry.require(agent_id)
        if snapshot.agent_id != agent_id:
            snapshot = replace(snapshot, agent_id=agent_id)
        entry.last_heartbeat_at = self._clock()
        await entry.queue.put(snapshot)

    async def drain(self, agent_id: str) -> None:
        """Process everything queued for an agent before returning."""
        entry = self._registry.require(agent_id)
        if agent_id in self._monitors:
            await entry.queue.join()
            return
        while not entry.queue.empty():
            snapshot = entry.queue.get_nowait()
            try:
                await self._process(entry, snapshot)
            finally:
                entry.queue.task_done()

    def _start_monitor(self, entry: AgentEntry) -> None:
        task = self._monitors.get(entry.agent_id)
        if task is not None and not task.done():
            return
        self._monitors[entry.agent_id] = asyncio.create_task(self._monitor(entry))

    async def _monitor(self, entry: AgentEntry) -> None:
        """Consume one agent's ingress queue in arrival order."""
        while self._running:
            try:
                snapshot = await entry.queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self._process(entry, snapshot)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    f"Monitor error for {entry.agent_id}: {e}",
                    exc_info=True,
                    extra={"agent_id": entry.agent_id},
                )
            finally:
                entry.queue.task_done()

    async def _process(self, entry: AgentEntry, snapshot: HealthSnapshot) -> None:
        issue: Issue | None = None
        async with entry.lock:
            is_latest = entry.add_snapshot(snapshot)
            transitions = await self._state_machine.observe(entry, snapshot, is_latest)
            if is_latest:
                self._feed_breaker(entry, snapshot)
            if any(t.is_deterioration for t in transitions):
                issue = self._detector.evaluate(entry)
        if issue is not None:
            await self._raise_issue(issue, source="anomaly_detector")

    def _feed_breaker(self, entry: AgentEntry, snapshot: HealthSnapshot) -> None:
        """Count reported errors against the agent's breaker.

        While open nothing is counted; a report arriving half-open is the trial request.
        """
        breaker = self._breakers.get(entry.agent_id)
        if not breaker.allow_request():
            return
        if snapshot.error_count > 0:
            breaker.record_failure()
        else:
            breaker.record_success()

    # Periodic work

    async def _ticker(
        self, name: str, interval_s: float, func: Callable[[], Awaitable[None]]
    ) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval_s)
                await func()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{name} tick failed: {e}", exc_info=True)

    async def evaluate_all(self) -> None:
        """One evaluation tick: silence, then anomaly rules, for every agent."""
        for entry in self._registry.entries():
            await self.evaluate(entry)

    async def evaluate(self, entry: AgentEntry) -> Issue | None:
        async with entry.lock:
            silent = self._state_machine.is_silent(entry)
            await self._state_machine.check_silence(entry)
            issue = self._detector.evaluate(entry, silent=silent)
        if issue is not None:
            await self._raise_issue(issue, source="anomaly_detector")
        return issue

    async def check_dependencies(self) -> None:
        graph = self._registry.dependency_graph()
        for entry in self._registry.entries():
            issue = self._detector.check_dependencies(entry, graph)
            if issue is not None:
                await self._raise_issue(issue, source="anomaly_detector")

    async def run_predictions(self) -> None:
        for entry in self._registry.entries():
            if self._engine.has_work(entry.agent_id):
                continue
            async with entry.lock:
                issue = self._scorer.evaluate(entry)
            if issue is not None:
                await self._raise_issue(issue, source="predictive_scorer")

    async def _raise_issue(self, issue: Issue, source: str) -> None:
        await self._storage.save_issue(issue)
        await self._event_bus.publish(
            build_message(
                Topic.ISSUE,
                source=source,
                event="issue_raised",
                agent_id=issue.agent_id,
                issue=issue.to_dict(),
            )
        )

    # Manual overrides

    async def emergency_stop_all(self) -> list[str]:
        """Force every agent into Level 4, preempting whatever is active."""
        stopped = []
        for entry in self._registry.entries():
            try:
                await self._engine.force_level(entry.agent_id, MAX_LEVEL, "emergency_stop")
            except InterventionConflict:
                # Already at Level 4
                continue
            stopped.append(entry.agent_id)
        logger.critical("Emergency stop issued for %s agents", len(stopped))
        await self._tracker.track(
            event_type="emergency_stop_all",
            actor="operator",
            data={"agent_ids": stopped},
        )
        return stopped

    async def manual_intervene(
        self, agent_id: str, level: int, reason: str = "manual_intervention"
    ) -> Issue:
        """Apply an explicit level to one agent."""
        issue = await self._engine.force_level(agent_id, level, reason)
        await self._tracker.track(
            event_type="manual_intervention",
            actor="operator",
            data={"agent_id": agent_id, "level": level, "reason": reason, "issue_id": issue.id},
        )
        return issue

    async def clear_isolation(self, agent_id: str) -> None:
        """Release an isolated agent; it must prove recovery from restarting."""
        entry = self._registry.require(agent_id)
        async with entry.lock:
            if entry.status is not AgentStatus.ISOLATED:
                raise InterventionConflict(f"{agent_id} is not isolated")
            self._breakers.reset_agent(agent_id)
            await self._state_machine.force(entry, AgentStatus.RESTARTING, "isolation_cleared")

        command = AgentCommand(
            agent_id=agent_id,
            kind=CommandKind.CIRCUIT_BREAKER_CLOSE,
            params={"action": "clear_isolation"},
            target_url=entry.agent.command_url,
        )
        try:
            await asyncio.wait_for(
                self._sink.send(command), timeout=self._engine.policy.command_timeout_s
            )
        except (CommandDeliveryFailed, asyncio.TimeoutError) as e:
            logger.warning(
                "Could not notify %s of cleared isolation: %s",
                agent_id,
                e,
                extra={"agent_id": agent_id},
            )
        else:
            await self._event_bus.publish(
                build_message(
                    Topic.COMMAND,
                    source="supervisor",
                    event="command_dispatched",
                    agent_id=agent_id,
                    command=command.to_dict(),
                )
            )
        await self._tracker.track(
            event_type="isolation_cleared",
            actor="operator",
            data={"agent_id": agent_id},
        )
