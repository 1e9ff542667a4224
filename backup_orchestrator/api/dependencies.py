"""FastAPI dependency providers for stores, the agent client and the scheduler."""

from fastapi import HTTPException, status

from backup_orchestrator.api.services.agent_client import AgentClient
from backup_orchestrator.api.services.storage import (
    HeartbeatStore,
    JobStore,
    RunStore,
    SqlHeartbeatStore,
    SqlJobStore,
    SqlRunStore,
)
from backup_orchestrator.core.scheduler import BackupScheduler, get_scheduler


def get_job_store() -> JobStore:
    return SqlJobStore()


def get_run_store() -> RunStore:
    return SqlRunStore()


def get_heartbeat_store() -> HeartbeatStore:
    return SqlHeartbeatStore()


def get_agent_client() -> AgentClient:
    return AgentClient()


def require_scheduler() -> BackupScheduler:
    """The running scheduler, or 503 while the application is starting."""
    scheduler = get_scheduler()
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler not initialized",
        )
    return scheduler
