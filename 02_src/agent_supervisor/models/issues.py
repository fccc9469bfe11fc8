"""Issue data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class IssueType(str, Enum):
    """Kinds of detected anomalies."""

    REPETITIVE_ACTION = "repetitive_action"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    RESPONSE_TIMEOUT = "response_timeout"
    ERROR_SPIKE = "error_spike"
    PREDICTED_DEGRADATION = "predicted_degradation"
    MANUAL_OVERRIDE = "manual_override"


class Severity(str, Enum):
    """Issue severity, ordered low to critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


@dataclass
class Issue:
    """A detected anomaly condition requiring remediation."""

    id: str
    agent_id: str
    type: IssueType
    severity: Severity
    detected_at: datetime
    evidence: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "detected_at": self.detected_at.isoformat(),
            "evidence": self.evidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        return cls(
            id=data["id"],
            agent_id=data["agent_id"],
            type=IssueType(data["type"]),
            severity=Severity(data["severity"]),
            detected_at=datetime.fromisoformat(data["detected_at"]),
            evidence=list(data.get("evidence", [])),
        )
