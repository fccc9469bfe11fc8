"""Tests for data models."""

from datetime import datetime, timedelta, timezone

import pytest

from agent_supervisor.models import (
    Agent,
    AgentStatus,
    HealthSnapshot,
    Intervention,
    Issue,
    IssueType,
    Outcome,
    ResourceUsage,
    Severity,
)


class TestAgent:
    """Tests for Agent model."""

    def test_create_agent_defaults(self):
        """Test creating an Agent with defaults."""
        agent = Agent(id="a1", type="worker")
        assert agent.dependencies == set()
        assert agent.resource_limits.memory is None
        assert agent.registered_at is None

    def test_status_values(self):
        """Test status enum values are the wire names."""
        assert AgentStatus.HEALTHY.value == "healthy"
        assert AgentStatus("isolated") is AgentStatus.ISOLATED


class TestHealthSnapshot:
    """Tests for HealthSnapshot model."""

    def test_snapshot_is_immutable(self):
        """Test that snapshots cannot be modified after creation."""
        snapshot = HealthSnapshot(agent_id="a1", timestamp=datetime.now(timezone.utc))
        with pytest.raises(Exception):
            snapshot.error_count = 5

    def test_error_rate_with_request_count(self):
        """Test error rate uses request count when known."""
        snapshot = HealthSnapshot(
            agent_id="a1",
            timestamp=datetime.now(timezone.utc),
            error_count=2,
            request_count=40,
        )
        assert snapshot.error_rate == pytest.approx(0.05)

    def test_error_rate_without_request_count(self):
        """Test error rate falls back to any-error when requests are unknown."""
        ts = datetime.now(timezone.utc)
        assert HealthSnapshot(agent_id="a1", timestamp=ts, error_count=3).error_rate == 1.0
        assert HealthSnapshot(agent_id="a1", timestamp=ts).error_rate == 0.0

    def test_peak_pct(self):
        """Test peak resource usage."""
        assert ResourceUsage(memory_pct=40, cpu_pct=75).peak_pct == 75

    def test_from_dict_normalizes_report(self):
        """Test building a snapshot from a raw report."""
        snapshot = HealthSnapshot.from_dict(
            "a1",
            {
                "timestamp": "2025-01-01T12:00:00",
                "response_time_ms": "1500",
                "resource_usage": {"memory_pct": 55},
                "current_task": "crawl",
            },
        )
        assert snapshot.agent_id == "a1"
        assert snapshot.timestamp.tzinfo is not None
        assert snapshot.response_time_ms == 1500.0
        assert snapshot.resource_usage.memory_pct == 55.0
        assert snapshot.resource_usage.cpu_pct == 0.0
        assert snapshot.current_task == "crawl"

    def test_to_dict_serializes_timestamp(self):
        """Test snapshot serialization."""
        ts = datetime(2025, 1, 1, tzinfo=timezone.utc)
        data = HealthSnapshot(agent_id="a1", timestamp=ts).to_dict()
        assert data["timestamp"] == ts.isoformat()
        assert data["resource_usage"] == {"memory_pct": 0.0, "cpu_pct": 0.0}


class TestIssue:
    """Tests for Issue model."""

    def test_severity_rank_order(self):
        """Test severities are ordered low to critical."""
        ranks = [s.rank for s in (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)]
        assert ranks == sorted(ranks)

    def test_issue_dict_round_trip(self):
        """Test Issue survives bus serialization."""
        issue = Issue(
            id="i1",
            agent_id="a1",
            type=IssueType.ERROR_SPIKE,
            severity=Severity.HIGH,
            detected_at=datetime.now(timezone.utc),
            evidence=[{"type": "error_spike", "deviation": 7.1}],
        )
        restored = Issue.from_dict(issue.to_dict())
        assert restored == issue


class TestIntervention:
    """Tests for Intervention model."""

    def test_active_until_outcome(self):
        """Test an intervention is active until it has an outcome."""
        ts = datetime.now(timezone.utc)
        intervention = Intervention(
            id="iv1",
            agent_id="a1",
            triggering_issue_id="i1",
            level=1,
            actions=["clear_cache"],
            started_at=ts,
            chain_id="c1",
        )
        assert intervention.active
        assert intervention.to_dict()["outcome"] is None

        intervention.outcome = Outcome.RESOLVED
        intervention.completed_at = ts + timedelta(seconds=5)
        assert not intervention.active
        assert intervention.to_dict()["outcome"] == "resolved"
