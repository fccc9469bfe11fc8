"""Anomaly detection over per-agent snapshot history."""

import statistics
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..config import Clock, utc_now
from ..logging_config import get_logger
from ..models import AgentStatus, HealthSnapshot, Issue, IssueType, Severity
from ..registry import AgentEntry
from ..health import critical_resources

logger = get_logger(__name__)

_SIGMA_FLOOR = 0.01
_BASELINE_SIZE = 50


@dataclass
class Finding:
    """One matched anomaly rule, before dedup."""

    type: IssueType
    severity: Severity
    evidence: dict[str, Any] = field(default_factory=dict)


def spike_severity(deviation: float) -> Severity:
    """Map a deviation in standard deviations to a severity."""
    if deviation >= 6:
        return Severity.HIGH
    if deviation >= 4:
        return Severity.MEDIUM
    return Severity.LOW


def merge_findings(
    agent_id: str, findings: list[Finding], detected_at: datetime
) -> Issue | None:
    """Collapse findings into one Issue at the highest severity.

    Ties go to the earliest finding; the rest become evidence.
    """
    if not findings:
        return None
    primary = findings[0]
    for finding in findings[1:]:
        if finding.severity.rank > primary.severity.rank:
            primary = finding

    evidence = [{"type": primary.type.value, **primary.evidence}]
    evidence.extend(
        {"type": f.type.value, "severity": f.severity.value, **f.evidence}
        for f in findings
        if f is not primary
    )
    return Issue(
        id=str(uuid.uuid4()),
        agent_id=agent_id,
        type=primary.type,
        severity=primary.severity,
        detected_at=detected_at,
        evidence=evidence,
    )


class AnomalyDetector:
    """Evaluates snapshots and recent history for anomaly patterns."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or utc_now
        # agent_id -> issue type -> newest snapshot timestamp already reported
        self._reported: dict[str, dict[IssueType, datetime]] = {}
        self._cycles: dict[str, tuple[str, ...]] = {}
        # agent_id -> status_since of the stuck episode already reported
        self._stuck: dict[str, datetime | None] = {}

    def forget(self, agent_id: str) -> None:
        self._reported.pop(agent_id, None)
        self._cycles.pop(agent_id, None)
        self._stuck.pop(agent_id, None)

    def evaluate(self, entry: AgentEntry, silent: bool = False) -> Issue | None:
        """Run every per-snapshot rule for one agent and merge the matches."""
        findings: list[Finding] = []
        latest = entry.latest

        if latest is not None:
            history = list(entry.history)
            for check in (
                self._check_resources,
                self._check_timeout,
                self._check_error_spike,
                self._check_repetition,
            ):
                finding = check(entry, history, latest)
                if finding is not None:
                    findings.append(finding)

        if entry.status is AgentStatus.STUCK:
            episode = entry.status_since
            if not findings and self._stuck.get(entry.agent_id) != episode:
                findings.append(self._stuck_finding(entry, silent))
            self._stuck[entry.agent_id] = episode

        issue = merge_findings(entry.agent_id, findings, self._clock())
        if issue is not None:
            logger.info(
                "Issue detected for %s: %s (%s)",
                entry.agent_id,
                issue.type.value,
                issue.severity.value,
                extra={"agent_id": entry.agent_id},
            )
        return issue

    def _already_reported(self, agent_id: str, issue_type: IssueType, at: datetime) -> bool:
        last = self._reported.get(agent_id, {}).get(issue_type)
        return last is not None and at <= last

    def _mark(self, agent_id: str, issue_type: IssueType, at: datetime) -> None:
        self._reported.setdefault(agent_id, {})[issue_type] = at

    def _check_resources(
        self, entry: AgentEntry, history: list[HealthSnapshot], latest: HealthSnapshot
    ) -> Finding | None:
        critical = critical_resources(history, entry.thresholds)
        if not critical:
            return None

        # One issue per continuous breach
        breach_start = latest.timestamp - timedelta(seconds=max(critical.values()))
        if self._already_reported(
            entry.agent_id, IssueType.RESOURCE_EXHAUSTION, breach_start
        ):
            return None
        self._mark(entry.agent_id, IssueType.RESOURCE_EXHAUSTION, latest.timestamp)

        return Finding(
            IssueType.RESOURCE_EXHAUSTION,
            Severity.CRITICAL,
            {
                "sustained_s": critical,
                "memory_pct": latest.resource_usage.memory_pct,
                "cpu_pct": latest.resource_usage.cpu_pct,
                "since": breach_start.isoformat(),
            },
        )

    def _check_timeout(
        self, entry: AgentEntry, history: list[HealthSnapshot], latest: HealthSnapshot
    ) -> Finding | None:
        if not latest.operation_type:
            return None
        limit = entry.thresholds.operation_timeouts_ms.get(latest.operation_type)
        if limit is None or latest.response_time_ms <= limit:
            return None
        if self._already_reported(
            entry.agent_id, IssueType.RESPONSE_TIMEOUT, latest.timestamp
        ):
            return None
        self._mark(entry.agent_id, IssueType.RESPONSE_TIMEOUT, latest.timestamp)

        return Finding(
            IssueType.RESPONSE_TIMEOUT,
            Severity.HIGH,
            {
                "operation_type": latest.operation_type,
                "response_time_ms": latest.response_time_ms,
                "timeout_ms": limit,
                "snapshot": latest.to_dict(),
            },
        )

    def _check_error_spike(
        self, entry: AgentEntry, history: list[HealthSnapshot], latest: HealthSnapshot
    ) -> Finding | None:
        thresholds = entry.thresholds
        baseline = [s.error_rate for s in history[:-1][-_BASELINE_SIZE:]]
        if len(baseline) < thresholds.error_spike_min_samples:
            return None
        if self._already_reported(entry.agent_id, IssueType.ERROR_SPIKE, latest.timestamp):
            return None

        mean = statistics.fmean(baseline)
        sigma = max(statistics.pstdev(baseline), _SIGMA_FLOOR)
        deviation = (latest.error_rate - mean) / sigma
        if deviation < thresholds.error_spike_sigma:
            return None
        self._mark(entry.agent_id, IssueType.ERROR_SPIKE, latest.timestamp)

        return Finding(
            IssueType.ERROR_SPIKE,
            spike_severity(deviation),
            {
                "error_rate": latest.error_rate,
                "baseline_mean": mean,
                "baseline_sigma": sigma,
                "deviation": round(deviation, 2),
            },
        )

    def _check_repetition(
        self, entry: AgentEntry, history: list[HealthSnapshot], latest: HealthSnapshot
    ) -> Finding | None:
        thresholds = entry.thresholds
        window_start = latest.timestamp - timedelta(seconds=thresholds.repetition_window_s)
        last = self._reported.get(entry.agent_id, {}).get(IssueType.REPETITIVE_ACTION)

        recent = [
            s
            for s in history
            if s.current_task
            and s.timestamp >= window_start
            and (last is None or s.timestamp > last)
        ]
        counts = Counter(s.current_task for s in recent)
        if not counts:
            return None
        task, count = counts.most_common(1)[0]
        if count < thresholds.repetition_count:
            return None
        self._mark(entry.agent_id, IssueType.REPETITIVE_ACTION, latest.timestamp)

        matching = [s for s in recent if s.current_task == task]
        return Finding(
            IssueType.REPETITIVE_ACTION,
            Severity.MEDIUM,
            {
                "task": task,
                "count": count,
                "first_seen": matching[0].timestamp.isoformat(),
                "last_seen": matching[-1].timestamp.isoformat(),
            },
        )

    def _stuck_finding(self, entry: AgentEntry, silent: bool) -> Finding:
        if silent:
            return Finding(
                IssueType.RESPONSE_TIMEOUT,
                Severity.HIGH,
                {
                    "reason": "heartbeat_silence",
                    "last_heartbeat_at": (
                        entry.last_heartbeat_at.isoformat()
                        if entry.last_heartbeat_at
                        else None
                    ),
                },
            )
        latest = entry.latest
        return Finding(
            IssueType.ERROR_SPIKE,
            Severity.HIGH,
            {
                "reason": "consecutive_errors",
                "consecutive_errors": latest.consecutive_errors if latest else 0,
            },
        )

    def check_dependencies(
        self, entry: AgentEntry, graph: dict[str, set[str]]
    ) -> Issue | None:
        """Walk the dependency graph from one agent looking for non-termination."""
        max_depth = entry.thresholds.max_dependency_depth
        path = find_dependency_loop(entry.agent_id, graph, max_depth)
        if path is None:
            self._cycles.pop(entry.agent_id, None)
            return None

        signature = tuple(path)
        if self._cycles.get(entry.agent_id) == signature:
            return None
        self._cycles[entry.agent_id] = signature

        reason = "cycle" if path[-1] in path[:-1] else "max_depth_exceeded"
        logger.warning(
            "Dependency loop for %s: %s",
            entry.agent_id,
            " -> ".join(path),
            extra={"agent_id": entry.agent_id},
        )
        return Issue(
            id=str(uuid.uuid4()),
            agent_id=entry.agent_id,
            type=IssueType.CIRCULAR_DEPENDENCY,
            severity=Severity.HIGH,
            detected_at=self._clock(),
            evidence=[
                {
                    "type": IssueType.CIRCULAR_DEPENDENCY.value,
                    "reason": reason,
                    "path": path,
                }
            ],
        )


def find_dependency_loop(
    start: str, graph: dict[str, set[str]], max_depth: int
) -> list[str] | None:
    """Depth-first walk from ``start``.

    Returns the offending path when the walk revisits a node on its own path
    or goes deeper than ``max_depth``; None when every branch terminates.
    """
    path: list[str] = [start]
    on_path: set[str] = {start}
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        for dep in sorted(graph.get(node, ())):
            if dep in on_path:
                return path + [dep]
            if dep in done:
                continue
            if len(path) > max_depth:
                return path + [dep]
            path.append(dep)
            on_path.add(dep)
            found = visit(dep)
            if found is not None:
                return found
            path.pop()
            on_path.discard(dep)
            done.add(dep)
        return None

    return visit(start)
