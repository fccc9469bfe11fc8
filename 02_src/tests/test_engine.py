"""Tests for InterventionEngine."""

import asyncio
import uuid
from datetime import datetime, timezone

import pytest

from agent_supervisor.errors import CommandDeliveryFailed, InterventionConflict, UnknownAgent
from agent_supervisor.event_bus import build_message
from agent_supervisor.models import (
    AgentStatus,
    BreakerState,
    Issue,
    IssueType,
    Outcome,
    Severity,
    Topic,
)


def _issue(agent_id="a1", issue_type=IssueType.ERROR_SPIKE, severity=Severity.HIGH):
    return Issue(
        id=str(uuid.uuid4()),
        agent_id=agent_id,
        type=issue_type,
        severity=severity,
        detected_at=datetime.now(timezone.utc),
    )


@pytest.fixture
async def entry(registry, make_agent):
    await registry.register(make_agent("a1", command_url="http://a1/commands"))
    return registry.require("a1")


@pytest.fixture
def events(event_bus):
    """Payloads published on the intervention topic."""
    received = []

    async def handler(msg):
        received.append(msg.payload)

    event_bus.subscribe(Topic.INTERVENTION, handler)
    return received


@pytest.fixture
async def patient_engine(make_engine, patient_policy):
    eng = make_engine(patient_policy)
    await eng.start()
    yield eng
    await eng.stop()


async def recover(state_machine, entry, make_snapshot, clock):
    """Feed three snapshots that meet the recovery criteria."""
    for _ in range(3):
        snapshot = make_snapshot(entry.agent_id, timestamp=clock.advance(1))
        async with entry.lock:
            is_latest = entry.add_snapshot(snapshot)
            await state_machine.observe(entry, snapshot, is_latest)


async def wait_for_status(entry, status, timeout=2.0):
    async def _poll():
        while entry.status is not status:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


async def first_command(sink):
    await asyncio.wait_for(sink.received.wait(), 2.0)


async def wait_for_events(events, name, count=1, timeout=2.0):
    async def _poll():
        while sum(1 for e in events if e["event"] == name) < count:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestEscalationChain:
    """Tests for walking an issue up the escalation table."""

    async def test_unresolved_issue_walks_every_level(self, engine, entry, storage, sink, notifier):
        """Test an issue that never recovers reaches a human through levels 1-4."""
        issue = _issue()

        assert await engine.submit(issue) == "started"
        await engine.wait_idle("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert [iv.level for iv in log] == [1, 2, 3, 4]
        assert [iv.outcome for iv in log] == [
            Outcome.FAILED,
            Outcome.FAILED,
            Outcome.FAILED,
            Outcome.ESCALATED,
        ]
        assert {iv.triggering_issue_id for iv in log} == {issue.id}
        assert len({iv.chain_id for iv in log}) == 1
        assert [iv.attempts for iv in log] == [3, 2, 1, 1]

        assert sink.actions("a1")[:3] == ["clear_cache", "reset_local_state", "retry_operation"]
        assert entry.status is AgentStatus.ISOLATED

        assert len(notifier.escalations) == 1
        escalation = notifier.escalations[0]
        assert escalation.issue_id == issue.id
        assert escalation.extra["levels_applied"] == [1, 2, 3, 4]
        assert engine.escalations == notifier.escalations

    async def test_level_two_failure_fails_agent(self, engine, entry, event_bus):
        """Test the agent is marked failed when a restart does not help."""
        transitions = []

        async def handler(msg):
            transitions.append((msg.payload["to_status"], msg.payload["reason"]))

        event_bus.subscribe(Topic.TRANSITION, handler)
        await engine.submit(_issue())
        await engine.wait_idle("a1")

        assert ("restarting", "level_2_restart") in transitions
        assert ("failed", "intervention_level_2_failed") in transitions
        assert ("isolated", "level_3_isolate") in transitions

    async def test_critical_issue_starts_at_isolation(self, engine, entry, storage, sink, breakers):
        """Test critical issues skip straight to level 3."""
        await engine.submit(_issue(issue_type=IssueType.RESOURCE_EXHAUSTION, severity=Severity.CRITICAL))
        await engine.wait_idle("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert [iv.level for iv in log] == [3, 4]
        assert sink.actions("a1")[0] == "isolate_agent"
        assert breakers.open_breakers() == ["a1"]
        assert entry.status is AgentStatus.ISOLATED

    async def test_predicted_issue_stays_at_level_one(self, engine, entry, storage, notifier):
        """Test advisory issues never escalate past level 1."""
        await engine.submit(_issue(issue_type=IssueType.PREDICTED_DEGRADATION, severity=Severity.LOW))
        await engine.wait_idle("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert [(iv.level, iv.outcome) for iv in log] == [(1, Outcome.FAILED)]
        assert notifier.escalations == []

    async def test_issue_from_bus(self, engine, entry, event_bus, storage):
        """Test issues published on the bus start a chain."""
        issue = _issue(issue_type=IssueType.PREDICTED_DEGRADATION, severity=Severity.LOW)
        await event_bus.publish(
            build_message(Topic.ISSUE, source="anomaly_detector", event="issue_raised", issue=issue.to_dict())
        )
        await engine.wait_idle("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert log[0].triggering_issue_id == issue.id


class TestRecovery:
    """Tests for resolving interventions on recovery."""

    async def test_recovery_resolves_level_one(
        self, patient_engine, entry, storage, state_machine, make_snapshot, clock, sink
    ):
        """Test recovery within the timeout resolves the intervention."""
        entry.status = AgentStatus.DEGRADED
        await patient_engine.submit(_issue())
        await first_command(sink)

        assert patient_engine.active("a1").level == 1
        await recover(state_machine, entry, make_snapshot, clock)
        await patient_engine.wait_idle("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert [(iv.level, iv.outcome, iv.attempts) for iv in log] == [(1, Outcome.RESOLVED, 1)]
        assert entry.status is AgentStatus.HEALTHY
        assert patient_engine.active("a1") is None

    async def test_recovery_drops_queued_issues(
        self, patient_engine, entry, state_machine, make_snapshot, clock, sink, events
    ):
        """Test issues queued behind a resolved chain are dropped."""
        entry.status = AgentStatus.DEGRADED
        await patient_engine.submit(_issue())
        assert await patient_engine.submit(_issue(issue_type=IssueType.REPETITIVE_ACTION, severity=Severity.MEDIUM)) == "queued"
        await first_command(sink)

        await recover(state_machine, entry, make_snapshot, clock)
        await patient_engine.wait_idle("a1")

        drops = [e["reason"] for e in events if e["event"] == "issue_dropped"]
        assert drops == ["superseded_by_recovery"]
        assert not patient_engine.has_work("a1")


class TestCriticalEscalation:
    """Tests for issues that preempt a running chain."""

    async def test_critical_issue_escalates_running_chain(
        self, patient_engine, entry, storage, state_machine, make_snapshot, clock, sink
    ):
        """Test a critical issue during level 1 jumps the chain to level 3."""
        await patient_engine.submit(_issue())
        await first_command(sink)

        critical = _issue(issue_type=IssueType.RESOURCE_EXHAUSTION, severity=Severity.CRITICAL)
        assert await patient_engine.submit(critical) == "escalated"

        await wait_for_status(entry, AgentStatus.ISOLATED)
        await recover(state_machine, entry, make_snapshot, clock)
        await patient_engine.wait_idle("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert [(iv.level, iv.outcome) for iv in log] == [
            (1, Outcome.ESCALATED),
            (3, Outcome.RESOLVED),
        ]
        assert log[0].chain_id == log[1].chain_id
        assert log[1].triggering_issue_id == critical.id
        assert entry.status is AgentStatus.ISOLATED

    async def test_concurrent_escalations_keep_one_chain(
        self, patient_engine, entry, storage, sink, notifier
    ):
        """Test a critical issue racing an emergency stop moves one chain upwards only."""
        await patient_engine.submit(_issue())
        await first_command(sink)

        critical = _issue(issue_type=IssueType.RESOURCE_EXHAUSTION, severity=Severity.CRITICAL)
        await asyncio.gather(
            patient_engine.submit(critical),
            patient_engine.force_level("a1", 4, "emergency_stop"),
        )
        await patient_engine.wait_idle("a1")

        running = [
            task
            for task in asyncio.all_tasks()
            if not task.done() and task.get_coro().__qualname__ == "InterventionEngine._run_chain"
        ]
        assert running == []

        log = await storage.get_interventions(agent_id="a1")
        levels = [iv.level for iv in log]
        assert levels == sorted(levels)
        assert (log[-1].level, log[-1].outcome) == (4, Outcome.ESCALATED)
        assert len({iv.chain_id for iv in log}) == 1
        assert len(notifier.escalations) == 1
        assert sink.actions("a1").count("emergency_shutdown") == 1

    async def test_budget_overrun_escalates(self, patient_engine, entry, sink, clock):
        """Test an issue arriving after the level budget moves the chain up."""
        await patient_engine.submit(_issue())
        await first_command(sink)

        clock.advance(10)
        decision = await patient_engine.submit(
            _issue(issue_type=IssueType.REPETITIVE_ACTION, severity=Severity.MEDIUM)
        )
        assert decision == "escalated"

        await wait_for_status(entry, AgentStatus.RESTARTING)
        assert patient_engine.active("a1").level == 2


class TestIntake:
    """Tests for the submit() decision."""

    async def test_duplicate_types_dropped(self, patient_engine, entry, events):
        """Test one queued issue per type."""
        assert await patient_engine.submit(_issue()) == "started"
        assert await patient_engine.submit(_issue()) == "dropped"

        repeat = _issue(issue_type=IssueType.REPETITIVE_ACTION, severity=Severity.MEDIUM)
        assert await patient_engine.submit(repeat) == "queued"
        assert await patient_engine.submit(
            _issue(issue_type=IssueType.REPETITIVE_ACTION, severity=Severity.MEDIUM)
        ) == "dropped"

        assert [i.id for i in patient_engine.pending("a1")] == [repeat.id]
        assert [e["event"] for e in events].count("issue_queued") == 1

    async def test_prediction_while_busy_dropped(self, patient_engine, entry):
        """Test advisory issues are not queued behind real ones."""
        await patient_engine.submit(_issue())
        decision = await patient_engine.submit(
            _issue(issue_type=IssueType.PREDICTED_DEGRADATION, severity=Severity.LOW)
        )
        assert decision == "dropped"
        assert patient_engine.pending("a1") == []

    async def test_unknown_agent_dropped(self, engine, events):
        """Test issues for unregistered agents."""
        assert await engine.submit(_issue("ghost")) == "dropped"
        assert events[-1]["reason"] == "unknown_agent"

    async def test_isolated_agent_dropped(self, engine, entry, events):
        """Test isolated agents get no automatic remediation."""
        entry.status = AgentStatus.ISOLATED
        assert await engine.submit(_issue()) == "dropped"
        assert events[-1]["reason"] == "agent_isolated"


class TestDeliveryFailures:
    """Tests for attempts that cannot reach the agent."""

    async def test_open_breaker_blocks_level_one(self, engine, entry, breakers, sink, storage, events):
        """Test level 1 is gated by the breaker and level 2 bypasses it."""
        breakers.get("a1").trip(hold=True)

        await engine.submit(_issue())
        await engine.wait_idle("a1")

        errors = [
            e["error"]
            for e in events
            if e["event"] == "intervention_attempt_failed" and e["level"] == 1
        ]
        assert errors == ["CircuitOpenRejected"] * 3
        assert sink.actions("a1")[0] == "checkpoint_state"

        log = await storage.get_interventions(agent_id="a1")
        assert [iv.level for iv in log] == [1, 2, 3, 4]

    async def test_refused_commands_still_escalate(self, engine, entry, sink, breakers, notifier, events):
        """Test delivery failures count as failed attempts."""
        sink.fail = True

        await engine.submit(_issue())
        await engine.wait_idle("a1")

        failed = [e for e in events if e["event"] == "intervention_attempt_failed"]
        assert {e["error"] for e in failed} == {"CommandDeliveryFailed"}
        assert len(notifier.escalations) == 1

    async def test_half_open_breaker_closes_on_first_command(
        self, patient_engine, entry, breakers, sink, clock, events, monkeypatch
    ):
        """Test only the first level-1 command passes a half-open breaker."""
        breaker = breakers.get("a1")
        breaker.trip()
        clock.advance(601)
        sent = []

        async def send(command):
            if command.params["action"] == "reset_local_state":
                raise CommandDeliveryFailed(command.agent_id, command.kind.value, "refused")
            sent.append(command.params["action"])

        monkeypatch.setattr(sink, "send", send)
        await patient_engine.submit(_issue())
        await wait_for_events(events, "intervention_attempt_failed", count=3)

        errors = [
            e["error"]
            for e in events
            if e["event"] == "intervention_attempt_failed" and e["level"] == 1
        ]
        assert errors == ["CommandDeliveryFailed"] * 3
        assert sent.count("clear_cache") == 3
        assert breaker.state is BreakerState.CLOSED
        assert breaker.failure_count == 1

    async def test_unexpected_sink_error_fails_attempt(
        self, engine, entry, sink, storage, notifier, events, monkeypatch
    ):
        """Test sink errors of any kind count as failed deliveries."""

        async def send(command):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(sink, "send", send)
        await engine.submit(_issue())
        await engine.wait_idle("a1")

        failed = [e for e in events if e["event"] == "intervention_attempt_failed"]
        assert {e["error"] for e in failed} == {"CommandDeliveryFailed"}
        assert "socket closed" in failed[0]["detail"]

        log = await storage.get_interventions(agent_id="a1")
        assert [iv.level for iv in log] == [1, 2, 3, 4]
        assert all(iv.outcome is not None for iv in log)
        assert len(notifier.escalations) == 1

    async def test_crashing_step_keeps_chain_alive(
        self, engine, entry, state_machine, storage, notifier, events, monkeypatch
    ):
        """Test an error outside delivery fails the attempt and the chain goes on."""

        async def force(entry, status, reason):
            raise RuntimeError("status store unavailable")

        monkeypatch.setattr(state_machine, "force", force)
        await engine.submit(_issue())
        await engine.wait_idle("a1")

        errors = {e["error"] for e in events if e["event"] == "intervention_attempt_failed"}
        assert "RuntimeError" in errors

        log = await storage.get_interventions(agent_id="a1")
        assert [iv.level for iv in log] == [1, 2, 3, 4]
        assert len(notifier.escalations) == 1

    async def test_hanging_command_times_out(self, engine, entry, sink, events):
        """Test commands that never return count as timed out."""
        sink.hang = True

        await engine.submit(_issue(issue_type=IssueType.PREDICTED_DEGRADATION, severity=Severity.LOW))
        await engine.wait_idle("a1")

        errors = [e["error"] for e in events if e["event"] == "intervention_attempt_failed"]
        assert errors == ["InterventionTimeout"] * 3


class TestManualControl:
    """Tests for operator-forced levels."""

    async def test_force_level_starts_chain(self, engine, entry, storage):
        """Test a manual level on an idle agent."""
        issue = await engine.force_level("a1", 3, "operator")
        await engine.wait_idle("a1")

        assert issue.type is IssueType.MANUAL_OVERRIDE
        assert issue.severity is Severity.CRITICAL
        log = await storage.get_interventions(agent_id="a1")
        assert [iv.level for iv in log] == [3, 4]
        assert (await storage.get_issues(agent_id="a1"))[0].id == issue.id

    async def test_lower_level_conflicts(self, patient_engine, entry, sink, storage):
        """Test a manual level may not move a chain backwards."""
        await patient_engine.submit(_issue())
        await first_command(sink)

        with pytest.raises(InterventionConflict):
            await patient_engine.force_level("a1", 1, "operator")

        # A refused override leaves nothing in the audit log
        assert await storage.get_issues(agent_id="a1") == []

    async def test_invalid_level(self, engine, entry):
        """Test levels outside 1-4."""
        with pytest.raises(ValueError):
            await engine.force_level("a1", 5, "operator")

    async def test_unknown_agent(self, engine):
        """Test manual control of an unregistered agent."""
        with pytest.raises(UnknownAgent):
            await engine.force_level("ghost", 2, "operator")

    async def test_emergency_preempts_running_chain(
        self, patient_engine, entry, storage, sink, notifier
    ):
        """Test level 4 supersedes a running level 1."""
        await patient_engine.submit(_issue())
        await first_command(sink)

        await patient_engine.force_level("a1", 4, "emergency_stop")
        await patient_engine.wait_idle("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert [(iv.level, iv.outcome) for iv in log] == [
            (1, Outcome.ESCALATED),
            (4, Outcome.ESCALATED),
        ]
        assert "emergency_shutdown" in sink.actions("a1")
        assert entry.status is AgentStatus.ISOLATED
        assert notifier.escalations[0].extra["levels_applied"] == [1, 4]

    async def test_forget_cancels_chain(self, patient_engine, entry, storage, sink):
        """Test deregistration closes the running intervention."""
        await patient_engine.submit(_issue())
        await first_command(sink)

        await patient_engine.forget("a1")

        log = await storage.get_interventions(agent_id="a1")
        assert [(iv.level, iv.outcome) for iv in log] == [(1, Outcome.FAILED)]
        assert not patient_engine.has_work("a1")
