"""Health report data models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True)
class ResourceUsage:
    """Resource usage as percentages of the agent's limits."""

    memory_pct: float = 0.0
    cpu_pct: float = 0.0

    @property
    def peak_pct(self) -> float:
        return max(self.memory_pct, self.cpu_pct)


@dataclass(frozen=True)
class HealthSnapshot:
    """A single heartbeat/health report. Immutable once ingested."""

    agent_id: str
    timestamp: datetime
    status: str = "ok"  # agent-reported, informational only
    response_time_ms: float = 0.0
    error_count: int = 0  # errors during the reporting interval
    consecutive_errors: int = 0
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    current_task: str | None = None
    request_count: int = 0  # operations during the interval, 0 = unknown
    operation_type: str | None = None  # "api_call", "storage", "computation"

    @property
    def error_rate(self) -> float:
        """Error rate for this reporting interval."""
        if self.request_count > 0:
            return min(1.0, self.error_count / self.request_count)
        return 1.0 if self.error_count > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, agent_id: str, data: dict[str, Any]) -> "HealthSnapshot":
        """Normalize a raw report (pushed or polled) into a snapshot."""
        usage = data.get("resource_usage") or {}
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            agent_id=agent_id,
            timestamp=timestamp,
            status=data.get("status", "ok"),
            response_time_ms=float(data.get("response_time_ms", 0.0)),
            error_count=int(data.get("error_count", 0)),
            consecutive_errors=int(data.get("consecutive_errors", 0)),
            resource_usage=ResourceUsage(
                memory_pct=float(usage.get("memory_pct", 0.0)),
                cpu_pct=float(usage.get("cpu_pct", 0.0)),
            ),
            current_task=data.get("current_task"),
            request_count=int(data.get("request_count", 0)),
            operation_type=data.get("operation_type"),
        )
