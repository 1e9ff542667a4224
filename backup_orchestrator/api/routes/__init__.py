"""API routes module."""

from backup_orchestrator.api.routes.agents import router as agents_router
from backup_orchestrator.api.routes.health import router as health_router
from backup_orchestrator.api.routes.jobs import router as jobs_router
from backup_orchestrator.api.routes.scheduler import router as scheduler_router

__all__ = [
    "agents_router",
    "health_router",
    "jobs_router",
    "scheduler_router",
]
