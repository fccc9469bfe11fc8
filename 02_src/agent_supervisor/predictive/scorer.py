"""Predictive risk scoring from trailing snapshot statistics."""

import math
import statistics
import uuid
from dataclasses import dataclass, field

from ..config import Clock, Settings, utc_now
from ..logging_config import get_logger
from ..models import AgentStatus, HealthSnapshot, Issue, IssueType, Severity
from ..registry import AgentEntry

logger = get_logger(__name__)

RECENT_SIZE = 5
MIN_BASELINE = 10
BASELINE_SIZE = 50
TREND_SIZE = 30
PROJECTION_S = 300.0

_RESPONSE_SIGMA_FLOOR = 1.0
_ERROR_SIGMA_FLOOR = 0.01

SCORABLE = frozenset({AgentStatus.HEALTHY, AgentStatus.DEGRADED})


@dataclass
class RiskScore:
    agent_id: str
    score: float
    components: dict[str, float] = field(default_factory=dict)


def z_component(z: float) -> float:
    """Map a z-score to [0, 1): 0 at or below zero, 0.5 at z=2."""
    if z <= 0:
        return 0.0
    return 1.0 / (1.0 + math.exp(-(z - 2.0)))


def noisy_or(components) -> float:
    """Probability that at least one independent component fires."""
    miss = 1.0
    for value in components:
        miss *= 1.0 - min(max(value, 0.0), 1.0)
    return 1.0 - miss


def _z_score(recent: list[float], baseline: list[float], floor: float) -> float:
    mean = statistics.fmean(baseline)
    sigma = max(statistics.pstdev(baseline), floor)
    return (statistics.fmean(recent) - mean) / sigma


class PredictiveScorer:
    """Scores agents for impending degradation before hard thresholds fire."""

    def __init__(self, settings: Settings, clock: Clock | None = None):
        self._settings = settings
        self._clock = clock or utc_now
        # Agents whose score is above threshold and already reported
        self._raised: set[str] = set()

    def forget(self, agent_id: str) -> None:
        self._raised.discard(agent_id)

    def score(self, entry: AgentEntry) -> RiskScore:
        history = list(entry.history)
        if len(history) < RECENT_SIZE + MIN_BASELINE:
            return RiskScore(entry.agent_id, 0.0)

        recent = history[-RECENT_SIZE:]
        baseline = history[:-RECENT_SIZE][-BASELINE_SIZE:]

        components = {
            "response_time": z_component(
                _z_score(
                    [s.response_time_ms for s in recent],
                    [s.response_time_ms for s in baseline],
                    _RESPONSE_SIGMA_FLOOR,
                )
            ),
            "error_rate": z_component(
                _z_score(
                    [s.error_rate for s in recent],
                    [s.error_rate for s in baseline],
                    _ERROR_SIGMA_FLOOR,
                )
            ),
            "resource_trend": self._resource_trend(entry, history[-TREND_SIZE:]),
        }
        return RiskScore(
            entry.agent_id, round(noisy_or(components.values()), 4), components
        )

    def _resource_trend(self, entry: AgentEntry, snapshots: list[HealthSnapshot]) -> float:
        """Where peak resource usage is heading, scaled between recovery and critical."""
        origin = snapshots[0].timestamp
        xs = [(s.timestamp - origin).total_seconds() for s in snapshots]
        ys = [s.resource_usage.peak_pct for s in snapshots]
        try:
            slope, _ = statistics.linear_regression(xs, ys)
        except statistics.StatisticsError:
            # All samples share one timestamp
            return 0.0
        if slope <= 0:
            return 0.0

        thresholds = entry.thresholds
        low = thresholds.recovery_resource_pct
        high = thresholds.critical_memory_pct
        projected = ys[-1] + slope * PROJECTION_S
        return min(max((projected - low) / (high - low), 0.0), 1.0)

    def evaluate(self, entry: AgentEntry) -> Issue | None:
        """Raise a predicted_degradation issue when the score crosses the threshold."""
        if entry.status not in SCORABLE:
            return None

        risk = self.score(entry)
        if risk.score < self._settings.risk_threshold:
            self._raised.discard(entry.agent_id)
            return None
        if entry.agent_id in self._raised:
            return None
        self._raised.add(entry.agent_id)

        logger.info(
            "Predicted degradation for %s (risk %.2f)",
            entry.agent_id,
            risk.score,
            extra={"agent_id": entry.agent_id},
        )
        return Issue(
            id=str(uuid.uuid4()),
            agent_id=entry.agent_id,
            type=IssueType.PREDICTED_DEGRADATION,
            severity=Severity.LOW,
            detected_at=self._clock(),
            evidence=[
                {
                    "type": IssueType.PREDICTED_DEGRADATION.value,
                    "score": risk.score,
                    "threshold": self._settings.risk_threshold,
                    "components": risk.components,
                }
            ],
        )
