"""Health check routes."""

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backup_orchestrator.core.config import get_settings
from backup_orchestrator.core.database import check_db_connection, get_db
from backup_orchestrator.core.monitoring import get_performance_dashboard
from backup_orchestrator.core.scheduler import get_scheduler

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Basic health check endpoint."""
    return {"status": "healthy", "version": get_settings().app_version}


@router.get("/health/detailed")
async def detailed_health_check(db: Session = Depends(get_db)) -> dict[str, Any]:
    """Detailed health check with component status."""
    components = {
        "database": "unknown",
        "scheduler": "unknown",
    }

    components["database"] = "healthy" if check_db_connection(db) else "unhealthy"

    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        components["scheduler"] = "running"
    else:
        components["scheduler"] = "not_running"

    healthy = components["database"] == "healthy" and components["scheduler"] == "running"
    return {
        "status": "healthy" if healthy else "degraded",
        "version": get_settings().app_version,
        "components": components,
        "scheduler": scheduler.get_status() if scheduler else None,
        "performance": get_performance_dashboard(),
    }
