"""Agent registration API routes."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import UnknownAgent
from ...models import Agent, ResourceLimits


class ResourceLimitsModel(BaseModel):
    """Declared resource limits."""

    memory: float | None = None
    cpu: float | None = None
    rate_limit: float | None = None


class AgentRequest(BaseModel):
    """Request model for registering an agent."""

    id: str = Field(min_length=1)
    type: str = "generic"
    dependencies: list[str] = Field(default_factory=list)
    resource_limits: ResourceLimitsModel = Field(default_factory=ResourceLimitsModel)
    health_url: str | None = None
    command_url: str | None = None


class AgentIdResponse(BaseModel):
    """Response model for registration."""

    agent_id: str


class AgentResponse(BaseModel):
    """Response model for one agent's live state."""

    agent_id: str
    type: str
    status: str
    status_since: datetime | None
    last_heartbeat_at: datetime | None
    latest_snapshot: dict[str, Any] | None
    active_intervention: dict[str, Any] | None
    pending_issues: list[str]


def create_registration_router(app: Application) -> APIRouter:
    """Create registration router."""
    router = APIRouter(prefix="/api/agents", tags=["registration"])

    @router.post("", response_model=AgentIdResponse)
    async def register_agent(request: AgentRequest) -> dict:
        """Register an agent, or update an existing registration."""
        try:
            agent = Agent(
                id=request.id,
                type=request.type,
                dependencies=set(request.dependencies),
                resource_limits=ResourceLimits(**request.resource_limits.model_dump()),
                health_url=request.health_url,
                command_url=request.command_url,
            )
            agent_id = await app.supervisor.register(agent)
            return {"agent_id": agent_id}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("", response_model=list[AgentResponse])
    async def list_agents() -> list[dict]:
        """List registered agents with their current status."""
        try:
            return [
                app.query.get_agent_status(agent.id) for agent in app.registry.agents()
            ]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/{agent_id}", response_model=AgentResponse)
    async def get_agent(agent_id: str) -> dict:
        """Current status of one agent."""
        try:
            return app.query.get_agent_status(agent_id)
        except UnknownAgent as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.delete("/{agent_id}", response_model=AgentIdResponse)
    async def deregister_agent(agent_id: str) -> dict:
        """Stop supervising an agent."""
        try:
            await app.supervisor.deregister(agent_id)
            return {"agent_id": agent_id}
        except UnknownAgent as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
