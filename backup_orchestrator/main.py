"""Backup Orchestrator - Main Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backup_orchestrator.api.routes import (
    agents_router,
    health_router,
    jobs_router,
    scheduler_router,
)
from backup_orchestrator.api.services.agent_client import AgentClient
from backup_orchestrator.api.services.alert_service import AlertService
from backup_orchestrator.api.services.storage import SqlHeartbeatStore, SqlJobStore, SqlRunStore
from backup_orchestrator.core.backup.executor import JobExecutor
from backup_orchestrator.core.config import get_settings
from backup_orchestrator.core.database import init_db
from backup_orchestrator.core.errors import BackupError
from backup_orchestrator.core.scheduler import init_scheduler

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Backup Orchestrator...")

    init_db()
    logger.info("Database initialized")

    executor = JobExecutor(
        runs=SqlRunStore(),
        heartbeats=SqlHeartbeatStore(),
        agent=AgentClient(settings),
        settings=settings,
        alert_service=AlertService(),
    )
    scheduler = init_scheduler(SqlJobStore(), executor, settings)
    scheduler.start()
    logger.info("Backup scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    scheduler.stop()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Schedules and supervises file backups executed by remote agents.",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(jobs_router)
app.include_router(scheduler_router)
app.include_router(agents_router)


@app.exception_handler(BackupError)
async def backup_error_handler(request: Request, exc: BackupError):
    """Backup errors escaping a route carry their code and user message."""
    logger.error(f"Backup error on {request.url.path}: {exc.code.value} {exc.message}")
    return JSONResponse(status_code=500, content={"error": exc.to_dict()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "backup_orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
