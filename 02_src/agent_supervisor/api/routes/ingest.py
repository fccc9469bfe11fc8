"""Heartbeat and metric ingestion routes."""

from datetime import datetime

from pydantic import BaseModel, Field
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import UnknownAgent
from ...models import HealthSnapshot


class ResourceUsageModel(BaseModel):
    """Resource usage in percent of the agent's limits."""

    memory_pct: float = Field(0.0, ge=0)
    cpu_pct: float = Field(0.0, ge=0)


class HealthReport(BaseModel):
    """Request model for a pushed health report."""

    timestamp: datetime | None = None
    status: str = "ok"
    response_time_ms: float = Field(0.0, ge=0)
    error_count: int = Field(0, ge=0)
    consecutive_errors: int = Field(0, ge=0)
    resource_usage: ResourceUsageModel = Field(default_factory=ResourceUsageModel)
    current_task: str | None = None
    request_count: int = Field(0, ge=0)
    operation_type: str | None = None


class AcceptedResponse(BaseModel):
    """Response model for accepted reports."""

    status: str
    agent_id: str


def create_ingest_router(app: Application) -> APIRouter:
    """Create ingest router."""
    router = APIRouter(prefix="/api/agents", tags=["ingest"])

    @router.post("/{agent_id}/health", response_model=AcceptedResponse, status_code=202)
    async def report_health(agent_id: str, report: HealthReport) -> dict:
        """Accept a heartbeat. Processing happens on the agent's monitor loop."""
        try:
            data = report.model_dump()
            if data["timestamp"] is None:
                data["timestamp"] = app.clock()
            snapshot = HealthSnapshot.from_dict(agent_id, data)
            await app.supervisor.report_health(agent_id, snapshot)
            return {"status": "accepted", "agent_id": agent_id}
        except UnknownAgent as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
