"""Read-only projections over the registry, engine and audit log."""

import json
from collections import Counter
from pathlib import Path
from typing import Any

from ..breaker import CircuitBreakerBank
from ..config import LOGS_DIR, Clock, utc_now
from ..interventions import InterventionEngine
from ..logging_config import get_logger
from ..models import (
    AgentStatus,
    CircuitBreakerState,
    Escalation,
    HealthSnapshot,
    Intervention,
    Issue,
)
from ..registry import Registry
from ..storage import IStorage

logger = get_logger(__name__)

DEFAULT_HEALTH_LOG = LOGS_DIR / "agent-health.log"


class QueryService:
    """Dashboard and operator views. Computed on demand, never cached."""

    def __init__(
        self,
        registry: Registry,
        engine: InterventionEngine,
        breakers: CircuitBreakerBank,
        storage: IStorage,
        clock: Clock | None = None,
    ):
        self._registry = registry
        self._engine = engine
        self._breakers = breakers
        self._storage = storage
        self._clock = clock or utc_now

    def get_overview(self) -> dict[str, Any]:
        counts = Counter(entry.status for entry in self._registry.entries())
        overview: dict[str, Any] = {"total": len(self._registry)}
        for status in AgentStatus:
            overview[status.value] = counts.get(status, 0)
        overview["active_interventions"] = len(self._engine.active_interventions())
        overview["open_breakers"] = len(self._breakers.open_breakers())
        overview["escalations"] = len(self._engine.escalations)
        return overview

    def get_agent_status(self, agent_id: str) -> dict[str, Any]:
        """Current state of one agent. Raises UnknownAgent."""
        entry = self._registry.require(agent_id)
        active = self._engine.active(agent_id)
        latest = entry.latest
        return {
            "agent_id": agent_id,
            "type": entry.agent.type,
            "status": entry.status.value,
            "status_since": entry.status_since.isoformat() if entry.status_since else None,
            "last_heartbeat_at": (
                entry.last_heartbeat_at.isoformat() if entry.last_heartbeat_at else None
            ),
            "latest_snapshot": latest.to_dict() if latest else None,
            "active_intervention": active.to_dict() if active and active.active else None,
            "pending_issues": [issue.id for issue in self._engine.pending(agent_id)],
        }

    def get_agent_history(
        self, agent_id: str, limit: int | None = None
    ) -> list[HealthSnapshot]:
        """Retained snapshots, oldest first. Raises UnknownAgent."""
        history = list(self._registry.require(agent_id).history)
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return history

    async def get_intervention_log(
        self, agent_id: str | None = None, limit: int = 1000
    ) -> list[Intervention]:
        """Completed interventions from storage plus the ones still running."""
        completed = await self._storage.get_interventions(agent_id=agent_id, limit=limit)
        active = [
            intervention
            for intervention in self._engine.active_interventions()
            if agent_id is None or intervention.agent_id == agent_id
        ]
        return sorted(completed + active, key=lambda i: i.started_at)

    async def get_issues(self, agent_id: str | None = None, limit: int = 100) -> list[Issue]:
        return await self._storage.get_issues(agent_id=agent_id, limit=limit)

    def get_escalations(self, agent_id: str | None = None) -> list[Escalation]:
        return [
            escalation
            for escalation in self._engine.escalations
            if agent_id is None or escalation.agent_id == agent_id
        ]

    def get_breakers(self, agent_id: str | None = None) -> list[CircuitBreakerState]:
        return [
            state
            for state in self._breakers.snapshots()
            if agent_id is None or state.agent_id == agent_id
        ]

    def build_health_report(self) -> dict[str, Any]:
        """Fleet health summary: one result per agent plus totals."""
        results = []
        for entry in self._registry.entries():
            latest = entry.latest
            results.append(
                {
                    "agent_id": entry.agent_id,
                    "type": entry.agent.type,
                    "status": entry.status.value,
                    "healthy": entry.status is AgentStatus.HEALTHY,
                    "response_time_ms": latest.response_time_ms if latest else None,
                    "error_rate": latest.error_rate if latest else None,
                }
            )

        timed = [r["response_time_ms"] for r in results if r["response_time_ms"] is not None]
        return {
            "timestamp": self._clock().isoformat(),
            "results": results,
            "summary": {
                "total": len(results),
                "healthy": sum(1 for r in results if r["healthy"]),
                "avg_response_time_ms": round(sum(timed) / len(timed)) if timed else None,
            },
        }

    def write_health_report(self, path: str | Path | None = None) -> dict[str, Any]:
        """Append the current health report to a JSON-lines log."""
        report = self.build_health_report()
        log_path = Path(path) if path else DEFAULT_HEALTH_LOG
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(report) + "\n")
        logger.info(
            "Health report written: %s/%s healthy",
            report["summary"]["healthy"],
            report["summary"]["total"],
        )
        return report
