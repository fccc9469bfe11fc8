"""Observability API routes."""

from dataclasses import asdict
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException, Query

from ...app import Application
from ...errors import UnknownAgent


class TraceEventResponse(BaseModel):
    """Response model for trace event."""

    id: str
    event_type: str
    actor: str
    data: dict[str, Any]
    timestamp: datetime


class OverviewResponse(BaseModel):
    """Fleet counts by status."""

    total: int
    healthy: int
    degraded: int
    stuck: int
    failed: int
    restarting: int
    isolated: int
    active_interventions: int
    open_breakers: int
    escalations: int


class InterventionResponse(BaseModel):
    """Response model for one intervention level."""

    id: str
    agent_id: str
    triggering_issue_id: str
    chain_id: str
    level: int
    actions: list[str]
    attempts: int
    started_at: datetime
    completed_at: datetime | None
    outcome: str | None


class IssueResponse(BaseModel):
    """Response model for a detected issue."""

    id: str
    agent_id: str
    type: str
    severity: str
    detected_at: datetime
    evidence: list[dict[str, Any]]


class EscalationResponse(BaseModel):
    """Response model for a human escalation."""

    agent_id: str
    issue_id: str
    chain_id: str
    reason: str
    raised_at: datetime
    extra: dict[str, Any]


class BreakerResponse(BaseModel):
    """Response model for a circuit breaker."""

    agent_id: str
    operation_class: str
    state: str
    failure_count: int
    last_failure_at: datetime | None
    next_probe_at: datetime | None
    open_count: int
    held: bool


def create_observability_router(app: Application) -> APIRouter:
    """Create observability router."""
    router = APIRouter(prefix="/api", tags=["observability"])

    @router.get("/overview", response_model=OverviewResponse)
    async def get_overview() -> dict:
        """Fleet status counts."""
        try:
            return app.query.get_overview()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/agents/{agent_id}/history", response_model=list[dict[str, Any]])
    async def get_agent_history(
        agent_id: str,
        limit: int | None = Query(None, ge=1, le=10000),
    ) -> list[dict]:
        """Retained snapshots for one agent, oldest first."""
        try:
            return [s.to_dict() for s in app.query.get_agent_history(agent_id, limit)]
        except UnknownAgent as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/interventions", response_model=list[InterventionResponse])
    async def get_intervention_log(
        agent_id: str | None = Query(None, description="Filter by agent"),
        limit: int = Query(1000, ge=1, le=10000),
    ) -> list[dict]:
        """Intervention audit log, oldest first, including running levels."""
        try:
            interventions = await app.query.get_intervention_log(agent_id, limit)
            return [i.to_dict() for i in interventions]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/issues", response_model=list[IssueResponse])
    async def get_issues(
        agent_id: str | None = Query(None, description="Filter by agent"),
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[dict]:
        """Detected issues, newest first."""
        try:
            return [i.to_dict() for i in await app.query.get_issues(agent_id, limit)]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/escalations", response_model=list[EscalationResponse])
    async def get_escalations(
        agent_id: str | None = Query(None, description="Filter by agent"),
    ) -> list[dict]:
        """Chains that exhausted automated remediation."""
        try:
            return [asdict(e) for e in app.query.get_escalations(agent_id)]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/breakers", response_model=list[BreakerResponse])
    async def get_breakers(
        agent_id: str | None = Query(None, description="Filter by agent"),
    ) -> list[dict]:
        """Circuit breaker states."""
        try:
            return [
                {**asdict(state), "state": state.state.value}
                for state in app.query.get_breakers(agent_id)
            ]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/health-report", response_model=dict[str, Any])
    async def get_health_report() -> dict:
        """Fleet health summary."""
        try:
            return app.query.build_health_report()
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/trace-events", response_model=list[TraceEventResponse])
    async def get_trace_events(
        after: str | None = Query(None, description="ISO timestamp filter"),
        limit: int = Query(100, ge=1, le=1000),
        event_type: str | None = Query(None, description="Filter by event type"),
        actor: str | None = Query(None, description="Filter by actor"),
    ) -> list[dict]:
        """Get trace events with optional filters."""
        try:
            after_dt = None
            if after:
                try:
                    after_dt = datetime.fromisoformat(after)
                except ValueError:
                    raise HTTPException(
                        status_code=400, detail="Invalid after timestamp format"
                    )

            events = await app.storage.get_trace_events(
                after=after_dt,
                event_types=[event_type] if event_type else None,
                actor=actor,
                limit=limit,
            )
            return [
                {
                    "id": e.id,
                    "event_type": e.event_type,
                    "actor": e.actor,
                    "data": e.data,
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in events
            ]

        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
