"""Agent liveness API routes."""

from datetime import timedelta

from fastapi import APIRouter, Depends, Path

from backup_orchestrator.api.dependencies import get_heartbeat_store
from backup_orchestrator.api.services.storage import HeartbeatStore
from backup_orchestrator.core.config import get_settings
from backup_orchestrator.core.heartbeat import agent_status
from backup_orchestrator.schemas.heartbeat import AgentStatus

router = APIRouter(
    prefix="/api/v1/agents",
    tags=["agents"],
)


@router.get("/{hostname}", response_model=AgentStatus)
async def get_agent_status(
    hostname: str = Path(..., min_length=1, max_length=255),
    heartbeats: HeartbeatStore = Depends(get_heartbeat_store),
) -> AgentStatus:
    """Liveness of a host's agent derived from its last heartbeat.

    Unknown hosts are reported offline rather than 404.
    """
    settings = get_settings()
    return agent_status(
        hostname,
        heartbeats.load_heartbeat(hostname),
        ttl=timedelta(seconds=settings.heartbeat_ttl_seconds),
        default_port=settings.agent_default_port,
    )
