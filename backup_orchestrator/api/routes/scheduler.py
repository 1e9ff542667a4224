"""Scheduler API routes."""

from typing import Any

from fastapi import APIRouter, Depends

from backup_orchestrator.api.dependencies import require_scheduler
from backup_orchestrator.core.scheduler import BackupScheduler

router = APIRouter(
    prefix="/api/v1/scheduler",
    tags=["scheduler"],
)


@router.get("/status")
async def get_scheduler_status(
    scheduler: BackupScheduler = Depends(require_scheduler),
) -> dict[str, Any]:
    """Timer state plus every scheduled job with its next run."""
    return {
        **scheduler.get_status(),
        "jobs": scheduler.get_scheduled_jobs(),
    }


@router.post("/reload")
async def reload_scheduler(
    scheduler: BackupScheduler = Depends(require_scheduler),
) -> dict[str, Any]:
    """Signal that job definitions changed; rebuilds every scheduled entry."""
    count = scheduler.notify_jobs_changed()
    return {"status": "reloaded", "scheduled_jobs": count, "generation": scheduler.generation}
