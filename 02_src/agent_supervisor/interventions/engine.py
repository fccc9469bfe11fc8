"""Intervention engine: graduated, table-driven remediation per agent."""

import asyncio
import contextlib
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from ..breaker import CircuitBreakerBank
from ..commands import AgentCommand, AgentCommandSink
from ..config import Clock, utc_now
from ..errors import (
    CircuitOpenRejected,
    CommandDeliveryFailed,
    EscalationExhausted,
    InterventionConflict,
    InterventionTimeout,
)
from ..event_bus import IEventBus, build_message
from ..health import HealthStateMachine
from ..logging_config import get_logger
from ..models import (
    AgentStatus,
    BusMessage,
    Escalation,
    Intervention,
    Issue,
    IssueType,
    Outcome,
    Severity,
    Topic,
)
from ..registry import AgentEntry, Registry
from ..storage import IStorage
from .notifier import IOperatorNotifier, LogNotifier
from .policy import MAX_LEVEL, ActionSpec, EscalationPolicy, LevelPolicy

logger = get_logger(__name__)

_ATTEMPT_ERRORS = (CommandDeliveryFailed, CircuitOpenRejected, InterventionTimeout)


@dataclass
class _Chain:
    """One escalation chain: a single issue walked up the levels."""

    chain_id: str
    agent_id: str
    issue: Issue
    level: int
    cap: int
    started_at: datetime
    level_started_at: datetime
    intervention: Intervention | None = None
    task: asyncio.Task | None = None
    superseded: bool = False
    levels_applied: list[int] = field(default_factory=list)


class IInterventionEngine(Protocol):
    """Consumes issues and drives remediation."""

    async def submit(self, issue: Issue) -> str:
        """Start, queue, escalate with, or drop an issue. Returns the decision."""
        ...

    def active(self, agent_id: str) -> Intervention | None:
        """Currently running intervention for an agent."""
        ...


class InterventionEngine:
    """Runs one escalation chain per agent and queues the rest."""

    def __init__(
        self,
        registry: Registry,
        state_machine: HealthStateMachine,
        breakers: CircuitBreakerBank,
        sink: AgentCommandSink,
        event_bus: IEventBus,
        storage: IStorage,
        policy: EscalationPolicy | None = None,
        notifier: IOperatorNotifier | None = None,
        clock: Clock | None = None,
    ):
        self._registry = registry
        self._state_machine = state_machine
        self._breakers = breakers
        self._sink = sink
        self._event_bus = event_bus
        self._storage = storage
        self._policy = policy or EscalationPolicy()
        self._notifier = notifier or LogNotifier()
        self._clock = clock or utc_now

        self._chains: dict[str, _Chain] = {}
        self._pending: dict[str, deque[Issue]] = {}
        # Held across intake and escalation of one agent
        self._locks: dict[str, asyncio.Lock] = {}
        self._escalations: list[Escalation] = []
        self._running = False

    @property
    def policy(self) -> EscalationPolicy:
        return self._policy

    async def start(self) -> None:
        """Subscribe to ISSUE topic."""
        self._running = True
        self._event_bus.subscribe(Topic.ISSUE, self._handle_issue)

    async def stop(self) -> None:
        """Cancel running chains. Completed levels are already on record."""
        self._running = False
        self._event_bus.unsubscribe(Topic.ISSUE, self._handle_issue)
        tasks = []
        for chain in self._chains.values():
            chain.superseded = True
            if chain.task:
                chain.task.cancel()
                tasks.append(chain.task)
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._chains.clear()
        self._pending.clear()
        self._locks.clear()

    def clear(self) -> None:
        """Forget recorded escalations. Call only while stopped."""
        self._escalations.clear()

    async def forget(self, agent_id: str) -> None:
        """Drop queued issues and cancel the chain of a deregistered agent."""
        async with self._lock_for(agent_id):
            self._pending.pop(agent_id, None)
            chain = self._chains.pop(agent_id, None)
            if chain is not None:
                chain.superseded = True
                if chain.task is not None:
                    chain.task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await chain.task
                if chain.intervention is not None and chain.intervention.active:
                    await self._complete(
                        chain.intervention, Outcome.FAILED, reason="agent_deregistered"
                    )
        self._locks.pop(agent_id, None)

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        return self._locks.setdefault(agent_id, asyncio.Lock())

    async def _handle_issue(self, bus_message: BusMessage) -> None:
        """Handle an issue published by the detector or scorer."""
        issue = Issue.from_dict(bus_message.payload["issue"])
        await self.submit(issue)

    # Queries

    def active(self, agent_id: str) -> Intervention | None:
        chain = self._chains.get(agent_id)
        return chain.intervention if chain else None

    def active_interventions(self) -> list[Intervention]:
        return [
            chain.intervention
            for chain in self._chains.values()
            if chain.intervention is not None and chain.intervention.active
        ]

    def pending(self, agent_id: str) -> list[Issue]:
        return list(self._pending.get(agent_id, ()))

    def has_work(self, agent_id: str) -> bool:
        return agent_id in self._chains or bool(self._pending.get(agent_id))

    @property
    def escalations(self) -> list[Escalation]:
        return list(self._escalations)

    async def wait_idle(self, agent_id: str) -> None:
        """Wait until the agent has no running chain and nothing queued."""
        while True:
            chain = self._chains.get(agent_id)
            if chain is None:
                if not self._pending.get(agent_id):
                    return
                await asyncio.sleep(0)
                continue
            task = chain.task
            if task is None:
                await asyncio.sleep(0)
                continue
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)
            await asyncio.sleep(0)

    # Intake

    async def submit(self, issue: Issue) -> str:
        """Start, queue, escalate with, or drop an issue. Returns the decision."""
        if issue.agent_id not in self._registry:
            return await self._drop(issue, "unknown_agent")
        async with self._lock_for(issue.agent_id):
            return await self._admit(issue)

    async def _admit(self, issue: Issue) -> str:
        agent_id = issue.agent_id
        entry = self._registry.get(agent_id)
        if entry is None:
            return await self._drop(issue, "unknown_agent")

        chain = self._chains.get(agent_id)
        queue = self._pending.setdefault(agent_id, deque())

        if issue.type is IssueType.PREDICTED_DEGRADATION and (chain or queue):
            return await self._drop(issue, "advisory_while_busy")

        if chain is None:
            if entry.status is AgentStatus.ISOLATED and issue.type is not IssueType.MANUAL_OVERRIDE:
                return await self._drop(issue, "agent_isolated")
            self._start_chain(issue, self._policy.start_level(issue))
            return "started"

        if issue.severity is Severity.CRITICAL and chain.level < 3:
            await self._escalate(chain, 3, "critical_issue", issue)
            return "escalated"

        if self._overran(chain):
            next_level = self._policy.level(chain.level).next_level
            if next_level is not None and next_level <= chain.cap:
                await self._escalate(chain, next_level, "level_budget_overrun")
                return "escalated"

        queued_types = {chain.issue.type} | {queued.type for queued in queue}
        if issue.type in queued_types:
            return await self._drop(issue, "duplicate_type")

        queue.append(issue)
        await self._publish("issue_queued", agent_id, issue_id=issue.id)
        return "queued"

    async def force_level(self, agent_id: str, level: int, reason: str) -> Issue:
        """Operator-ordered remediation at an explicit level."""
        if not 1 <= level <= MAX_LEVEL:
            raise ValueError(f"Level must be between 1 and {MAX_LEVEL}")
        self._registry.require(agent_id)

        issue = Issue(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            type=IssueType.MANUAL_OVERRIDE,
            severity=Severity.CRITICAL if level >= 3 else Severity.HIGH,
            detected_at=self._clock(),
            evidence=[{"type": IssueType.MANUAL_OVERRIDE.value, "reason": reason, "level": level}],
        )
        async with self._lock_for(agent_id):
            chain = self._chains.get(agent_id)
            if chain is None:
                self._start_chain(issue, level, cap=MAX_LEVEL)
            elif level <= chain.level:
                raise InterventionConflict(
                    f"{agent_id} already at level {chain.level}; cannot apply level {level}"
                )
            else:
                await self._escalate(chain, level, reason, issue)
            await self._storage.save_issue(issue)
        return issue

    def _overran(self, chain: _Chain) -> bool:
        budget = self._policy.level(chain.level).budget_s
        if budget is None:
            return False
        return (self._clock() - chain.level_started_at).total_seconds() > budget

    async def _drop(self, issue: Issue, reason: str) -> str:
        logger.info(
            "Issue %s for %s dropped: %s",
            issue.type.value,
            issue.agent_id,
            reason,
            extra={"agent_id": issue.agent_id},
        )
        await self._publish("issue_dropped", issue.agent_id, issue_id=issue.id, reason=reason)
        return "dropped"

    # Chain lifecycle

    def _start_chain(self, issue: Issue, level: int, cap: int | None = None) -> _Chain:
        now = self._clock()
        chain = _Chain(
            chain_id=str(uuid.uuid4()),
            agent_id=issue.agent_id,
            issue=issue,
            level=level,
            cap=cap if cap is not None else max(level, self._policy.cap_for(issue)),
            started_at=now,
            level_started_at=now,
        )
        self._chains[issue.agent_id] = chain
        chain.task = asyncio.create_task(self._run_chain(chain))
        return chain

    async def _escalate(
        self, chain: _Chain, to_level: int, reason: str, issue: Issue | None = None
    ) -> None:
        """Supersede the running level and continue the chain higher up."""
        if to_level <= chain.level:
            return

        chain.superseded = True
        if chain.task is not None and chain.task is not asyncio.current_task():
            chain.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await chain.task

        if chain.intervention is not None and chain.intervention.active:
            await self._complete(chain.intervention, Outcome.ESCALATED, reason=reason)

        logger.warning(
            "Escalating %s from level %s to %s (%s)",
            chain.agent_id,
            chain.level,
            to_level,
            reason,
            extra={"agent_id": chain.agent_id, "intervention_level": to_level},
        )
        if issue is not None:
            chain.issue = issue
        chain.level = to_level
        chain.cap = max(chain.cap, to_level)
        chain.superseded = False
        chain.intervention = None
        # Re-register in case the cancelled task already cleaned up
        self._chains[chain.agent_id] = chain
        chain.task = asyncio.create_task(self._run_chain(chain))

    async def _run_chain(self, chain: _Chain) -> None:
        outcome: Outcome | None = None
        try:
            while True:
                policy = self._policy.level(chain.level)
                outcome = await self._run_level(chain, policy)
                if outcome is not Outcome.FAILED:
                    break
                if policy.next_level is None or policy.next_level > chain.cap:
                    break
                chain.level = policy.next_level
        except Exception:
            logger.exception(
                "Escalation chain for %s crashed at level %s",
                chain.agent_id,
                chain.level,
                extra={"agent_id": chain.agent_id, "intervention_level": chain.level},
            )
            outcome = Outcome.FAILED
        finally:
            if not chain.superseded:
                if self._chains.get(chain.agent_id) is chain:
                    del self._chains[chain.agent_id]
                if self._running:
                    await self._start_next(chain.agent_id, outcome)

    async def _start_next(self, agent_id: str, last_outcome: Outcome | None) -> None:
        queue = self._pending.get(agent_id)
        entry = self._registry.get(agent_id)
        while queue:
            issue = queue.popleft()
            if entry is None:
                await self._drop(issue, "unknown_agent")
                continue
            if last_outcome is Outcome.RESOLVED and entry.status is AgentStatus.HEALTHY:
                await self._drop(issue, "superseded_by_recovery")
                continue
            if entry.status is AgentStatus.ISOLATED and issue.type is not IssueType.MANUAL_OVERRIDE:
                await self._drop(issue, "agent_isolated")
                continue
            self._start_chain(issue, self._policy.start_level(issue))
            return

    async def _run_level(self, chain: _Chain, policy: LevelPolicy) -> Outcome:
        now = self._clock()
        chain.level_started_at = now
        chain.levels_applied.append(policy.level)
        intervention = Intervention(
            id=str(uuid.uuid4()),
            agent_id=chain.agent_id,
            triggering_issue_id=chain.issue.id,
            level=policy.level,
            actions=policy.action_names,
            started_at=now,
            chain_id=chain.chain_id,
        )
        chain.intervention = intervention
        await self._publish(
            "intervention_started",
            chain.agent_id,
            intervention=intervention.to_dict(),
            issue_type=chain.issue.type.value,
            severity=chain.issue.severity.value,
        )
        logger.info(
            "Level %s (%s) started for %s",
            policy.level,
            policy.name,
            chain.agent_id,
            extra={
                "agent_id": chain.agent_id,
                "intervention_level": policy.level,
                "intervention_id": intervention.id,
            },
        )

        entry = self._registry.get(chain.agent_id)
        if entry is None:
            await self._complete(intervention, Outcome.FAILED, reason="agent_deregistered")
            return Outcome.ESCALATED

        for attempt in range(1, policy.max_attempts + 1):
            intervention.attempts = attempt
            async with entry.lock:
                entry.recovery_streak = 0
                entry.recovery_event.clear()

            try:
                await self._dispatch(entry, policy, intervention)
            except Exception as e:
                if not isinstance(e, _ATTEMPT_ERRORS):
                    logger.exception(
                        "Level %s attempt %s crashed for %s",
                        policy.level,
                        attempt,
                        chain.agent_id,
                        extra={"agent_id": chain.agent_id, "intervention_id": intervention.id},
                    )
                await self._publish(
                    "intervention_attempt_failed",
                    chain.agent_id,
                    intervention_id=intervention.id,
                    level=policy.level,
                    attempt=attempt,
                    error=type(e).__name__,
                    detail=str(e),
                )
                continue

            if policy.timeout_s is None:
                # Terminal level: nothing left to wait for
                return await self._exhaust(chain, intervention)

            if await self._await_recovery(entry, policy.timeout_s):
                await self._complete(intervention, Outcome.RESOLVED)
                return Outcome.RESOLVED

            await self._publish(
                "intervention_attempt_failed",
                chain.agent_id,
                intervention_id=intervention.id,
                level=policy.level,
                attempt=attempt,
                error="NoRecovery",
                detail=f"recovery criteria not met within {policy.timeout_s}s",
            )

        if policy.next_level is None:
            return await self._exhaust(chain, intervention)

        await self._complete(intervention, Outcome.FAILED, reason="attempts_exhausted")
        if policy.level >= 2:
            async with entry.lock:
                await self._state_machine.intervention_failed(entry, policy.level)
        return Outcome.FAILED

    async def _exhaust(self, chain: _Chain, intervention: Intervention) -> Outcome:
        """Level 4 done: a human owns the agent from here."""
        error = EscalationExhausted(chain.agent_id, chain.issue.id)
        escalation = Escalation(
            agent_id=chain.agent_id,
            issue_id=chain.issue.id,
            chain_id=chain.chain_id,
            reason=str(error),
            raised_at=self._clock(),
            extra={"levels_applied": list(chain.levels_applied)},
        )
        self._escalations.append(escalation)
        await self._complete(intervention, Outcome.ESCALATED, reason="human_escalation")
        await self._publish(
            "escalation_exhausted",
            chain.agent_id,
            issue_id=chain.issue.id,
            chain_id=chain.chain_id,
            levels_applied=list(chain.levels_applied),
        )
        await self._notifier.notify(escalation)
        return Outcome.ESCALATED

    async def _await_recovery(self, entry: AgentEntry, timeout_s: float) -> bool:
        try:
            await asyncio.wait_for(entry.recovery_event.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return False
        return True

    async def _dispatch(
        self, entry: AgentEntry, policy: LevelPolicy, intervention: Intervention
    ) -> None:
        """Deliver one attempt's action bundle.

        Gated bundles ask the breaker before every action. From half-open only
        the first action goes out alone; the rest follow once its
        outcome has closed the breaker.
        """
        breaker = None
        if not policy.bypass_breaker:
            breaker = self._breakers.get(entry.agent_id)

        for action in policy.actions:
            try:
                if breaker is None:
                    await self._perform(entry, policy, action, intervention)
                else:
                    await breaker.call(self._perform, entry, policy, action, intervention)
            except _ATTEMPT_ERRORS as e:
                if not policy.best_effort:
                    raise
                logger.error(
                    "Level %s action %s failed for %s: %s",
                    policy.level,
                    action.name,
                    entry.agent_id,
                    e,
                    extra={"agent_id": entry.agent_id},
                )

        if policy.status_on_dispatch is not None:
            async with entry.lock:
                await self._state_machine.force(
                    entry, policy.status_on_dispatch, f"level_{policy.level}_{policy.name}"
                )

    async def _perform(
        self,
        entry: AgentEntry,
        policy: LevelPolicy,
        action: ActionSpec,
        intervention: Intervention,
    ) -> None:
        if action.name in ("isolate_agent", "emergency_shutdown"):
            self._breakers.trip_agent(entry.agent_id, hold=True)

        if action.command is None:
            await self._publish(
                action.name,
                entry.agent_id,
                intervention_id=intervention.id,
                level=policy.level,
                agent_type=entry.agent.type,
            )
            return

        command = AgentCommand(
            agent_id=entry.agent_id,
            kind=action.command,
            params={
                "action": action.name,
                "level": policy.level,
                "intervention_id": intervention.id,
            },
            target_url=entry.agent.command_url,
        )
        timeout = self._policy.command_timeout(policy)
        try:
            await asyncio.wait_for(self._sink.send(command), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise InterventionTimeout(entry.agent_id, policy.level, timeout) from e
        except CommandDeliveryFailed:
            raise
        except Exception as e:
            raise CommandDeliveryFailed(entry.agent_id, command.kind.value, repr(e)) from e

        await self._event_bus.publish(
            build_message(
                Topic.COMMAND,
                source="intervention_engine",
                event="command_dispatched",
                agent_id=entry.agent_id,
                command=command.to_dict(),
            )
        )

    async def _complete(
        self, intervention: Intervention, outcome: Outcome, reason: str | None = None
    ) -> None:
        intervention.outcome = outcome
        intervention.completed_at = self._clock()
        await self._storage.save_intervention(intervention)
        await self._publish(
            "intervention_completed",
            intervention.agent_id,
            intervention=intervention.to_dict(),
            reason=reason,
        )
        logger.info(
            "Level %s for %s completed: %s",
            intervention.level,
            intervention.agent_id,
            outcome.value,
            extra={
                "agent_id": intervention.agent_id,
                "intervention_level": intervention.level,
                "intervention_id": intervention.id,
            },
        )

    async def _publish(self, event: str, agent_id: str, **payload) -> None:
        await self._event_bus.publish(
            build_message(
                Topic.INTERVENTION,
                source="intervention_engine",
                event=event,
                agent_id=agent_id,
                **payload,
            )
        )
