"""Control API routes: manual overrides and test harness controls."""

from typing import Any

from pydantic import BaseModel, Field
from fastapi import APIRouter, HTTPException

from ...app import Application
from ...errors import InterventionConflict, UnknownAgent
from ...interventions import MAX_LEVEL


class StatusResponse(BaseModel):
    """Response model for status."""

    status: str


class InterveneRequest(BaseModel):
    """Request model for a manual intervention."""

    level: int = Field(ge=1, le=MAX_LEVEL)
    reason: str = "manual_intervention"


class InterveneResponse(BaseModel):
    """Response model for a manual intervention."""

    status: str
    agent_id: str
    level: int
    issue_id: str


class EmergencyStopResponse(BaseModel):
    """Response model for an emergency stop."""

    status: str
    agent_ids: list[str]


# Global SIM instance (will be set by main app)
_sim_instance: Any = None


def set_sim_instance(sim: Any) -> None:
    """Set the global SIM instance."""
    global _sim_instance
    _sim_instance = sim


def get_sim_instance() -> Any:
    """Get the global SIM instance."""
    return _sim_instance


def create_control_router(app: Application) -> APIRouter:
    """Create control router."""
    router = APIRouter(prefix="/api/control", tags=["control"])

    @router.post("/emergency-stop", response_model=EmergencyStopResponse)
    async def emergency_stop_all() -> dict:
        """Force every agent into Level 4."""
        try:
            stopped = await app.supervisor.emergency_stop_all()
            return {"status": "ok", "agent_ids": stopped}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/agents/{agent_id}/intervene", response_model=InterveneResponse)
    async def manual_intervene(agent_id: str, request: InterveneRequest) -> dict:
        """Apply an explicit intervention level to one agent."""
        try:
            issue = await app.supervisor.manual_intervene(
                agent_id, request.level, request.reason
            )
            return {
                "status": "ok",
                "agent_id": agent_id,
                "level": request.level,
                "issue_id": issue.id,
            }
        except UnknownAgent as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InterventionConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/agents/{agent_id}/clear-isolation", response_model=StatusResponse)
    async def clear_isolation(agent_id: str) -> dict:
        """Release an isolated agent back to restarting."""
        try:
            await app.supervisor.clear_isolation(agent_id)
            return {"status": "ok"}
        except UnknownAgent as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InterventionConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/reset", response_model=StatusResponse)
    async def reset_system() -> dict:
        """Reset system data between test runs."""
        try:
            await app.reset()
            return {"status": "ok"}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/sim/start", response_model=StatusResponse)
    async def start_sim() -> dict:
        """Start the fleet simulation."""
        try:
            if _sim_instance:
                await _sim_instance.start()
                return {"status": "ok"}
            else:
                raise HTTPException(status_code=404, detail="SIM not configured")
        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/sim/stop", response_model=StatusResponse)
    async def stop_sim() -> dict:
        """Stop the fleet simulation."""
        try:
            if _sim_instance:
                await _sim_instance.stop()
                return {"status": "ok"}
            else:
                raise HTTPException(status_code=404, detail="SIM not configured")
        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
