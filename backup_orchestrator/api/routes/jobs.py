"""Backup job API routes: manual runs, run history and physical backups."""

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from backup_orchestrator.api.dependencies import (
    get_agent_client,
    get_heartbeat_store,
    get_job_store,
    get_run_store,
    require_scheduler,
)
from backup_orchestrator.api.services.agent_client import AgentClient
from backup_orchestrator.api.services.storage import HeartbeatStore, JobStore, RunStore
from backup_orchestrator.core.backup.layout import sanitize_segment
from backup_orchestrator.core.config import get_settings
from backup_orchestrator.core.errors import BackupError, JobNotFoundError, JobRunningError
from backup_orchestrator.core.heartbeat import resolve_agent
from backup_orchestrator.core.scheduler import BackupScheduler

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/jobs",
    tags=["jobs"],
)

JobId = Path(..., min_length=1, max_length=200)


@router.post("/{job_id}/run", status_code=status.HTTP_202_ACCEPTED)
async def run_job(
    job_id: str = JobId,
    scheduler: BackupScheduler = Depends(require_scheduler),
) -> dict[str, Any]:
    """Start a manual run of a job.

    Raises:
        HTTPException: 404 if the job does not exist, 409 if it is already running
    """
    try:
        scheduler.trigger_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict()) from e
    except JobRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_dict()) from e

    logger.info(f"Manual run of job {job_id} triggered")
    return {"status": "triggered", "job_id": job_id}


@router.get("/{job_id}/runs")
async def list_runs(
    job_id: str = JobId,
    limit: int = Query(20, ge=1, le=200),
    jobs: JobStore = Depends(get_job_store),
    runs: RunStore = Depends(get_run_store),
) -> dict[str, Any]:
    """Most recent runs of a job, newest first."""
    if jobs.load_job(job_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=JobNotFoundError(job_id).to_dict(),
        )
    return {
        "job_id": job_id,
        "runs": [run.model_dump(mode="json") for run in runs.load_runs_for_job(job_id, limit)],
    }


@router.get("/{job_id}/backups")
async def list_physical_backups(
    job_id: str = JobId,
    jobs: JobStore = Depends(get_job_store),
    heartbeats: HeartbeatStore = Depends(get_heartbeat_store),
    agent: AgentClient = Depends(get_agent_client),
) -> dict[str, Any]:
    """Backups physically present on each mapping's destination, as seen by the agent."""
    job = jobs.load_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=JobNotFoundError(job_id).to_dict(),
        )

    settings = get_settings()
    endpoint = resolve_agent(
        heartbeats.load_heartbeat(job.client_hostname),
        ttl=timedelta(seconds=settings.heartbeat_ttl_seconds),
        default_port=settings.agent_default_port,
    )
    if endpoint is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Agent for {job.client_hostname} is offline",
        )

    try:
        listings = await agent.list_job_backups(
            endpoint,
            sanitize_segment(job.job_id),
            [
                {
                    "source_path": m.source_path,
                    "destination_path": m.destination_path,
                    "label": m.label,
                    "mode": job.mapping_mode(m),
                    "credentials": m.credentials.model_dump() if m.credentials else None,
                }
                for m in job.mappings
            ],
        )
    except BackupError as e:
        logger.error(f"Listing backups for job {job_id} failed: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_dict()) from e

    listings = [listing for listing in listings if isinstance(listing, dict)]
    for idx, listing in enumerate(listings):
        if not isinstance(listing.get("index"), int):
            listing["index"] = idx
        if isinstance(listing.get("backups"), list):
            listing["backups"].sort(key=lambda b: str(b.get("modified") or ""), reverse=True)

    return {"hostname": job.client_hostname, "job_id": job_id, "mappings": listings}
