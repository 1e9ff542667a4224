"""Shared fixtures for backup orchestrator tests."""

import os

# Keep the module-level engine off the filesystem before anything imports it
os.environ.setdefault("DATABASE_URL", "sqlite://")

import asyncio
import shutil
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import backup_orchestrator.models  # noqa: F401
from backup_orchestrator.core.config import Settings
from backup_orchestrator.core.database import Base
from backup_orchestrator.core.monitoring import PerformanceMonitor
from backup_orchestrator.schemas import Credentials, DailySchedule, Heartbeat, Job, Mapping, Retention

# Wednesday
FIXED_NOW = datetime(2024, 6, 5, 9, 0, 0, tzinfo=UTC)
HOSTNAME = "OFFICE-PC01"


class InMemoryJobStore:
    def __init__(self, jobs=None):
        self.jobs = {job.job_id: job for job in jobs or []}

    def load_all_jobs(self):
        return list(self.jobs.values())

    def load_job(self, job_id):
        return self.jobs.get(job_id)


class InMemoryRunStore:
    """Keeps the latest copy of every run plus every incremental save."""

    def __init__(self):
        self.runs = {}
        self.saves = []

    def save_run(self, run):
        snapshot = run.model_copy(deep=True)
        self.runs[run.run_id] = snapshot
        self.saves.append(snapshot)

    def load_runs_for_job(self, job_id, limit=50):
        runs = [r for r in self.runs.values() if r.job_id == job_id]
        return sorted(runs, key=lambda r: r.start, reverse=True)[:limit]


class InMemoryHeartbeatStore:
    def __init__(self, heartbeats=None):
        self.heartbeats = {hb.hostname: hb for hb in heartbeats or []}

    def load_heartbeat(self, hostname):
        return self.heartbeats.get(hostname)

    def save_heartbeat(self, heartbeat):
        self.heartbeats[heartbeat.hostname] = heartbeat


class FakeAgent:
    """Scripted stand-in for ``AgentClient``.

    ``backup_responses`` is consumed in order; an entry may be a dict, an
    exception to raise, or a callable taking the request. Deletions remove
    existing local paths, as the real agent would on a shared destination.
    """

    def __init__(self):
        self.backup_responses = []
        self.backup_calls = []
        self.delete_calls = []
        self.delete_response = None
        self.listings = []
        self.started = asyncio.Event()
        self.gate = None

    async def backup(self, endpoint, request):
        self.backup_calls.append(request)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        response = self.backup_responses.pop(0) if self.backup_responses else {"Success": True}
        if callable(response):
            response = response(request)
        if isinstance(response, Exception):
            raise response
        return response

    async def delete_paths(self, endpoint, paths):
        self.delete_calls.append(paths)
        if isinstance(self.delete_response, Exception):
            raise self.delete_response
        if self.delete_response is not None:
            return self.delete_response
        for entry in paths:
            shutil.rmtree(entry["path"], ignore_errors=True)
        return {"results": [{"path": p["path"], "status": "deleted"} for p in paths]}

    async def list_job_backups(self, endpoint, job_label, mappings):
        return self.listings


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and rooted in tmp_path."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        data_root=tmp_path / "data",
        scheduler_timezone="UTC",
        notification_enabled=False,
    )


@pytest.fixture
def online_heartbeat():
    return Heartbeat(
        hostname=HOSTNAME,
        status="online",
        timestamp=FIXED_NOW,
        agent_ip="10.0.0.5",
        agent_port=8081,
    )


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def heartbeat_store(online_heartbeat):
    return InMemoryHeartbeatStore([online_heartbeat])


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def monitor():
    return PerformanceMonitor()


@pytest.fixture
def notifier():
    return AsyncMock(return_value={"success": True})


@pytest.fixture
def make_job(tmp_path):
    """Factory for a single-mapping copy job writing under tmp_path."""

    def _make(
        job_id="office-docs",
        mappings=None,
        mode="copy",
        max_backups=5,
        credentials=None,
        schedule=None,
    ):
        if mappings is None:
            source = tmp_path / "source" / "Documents"
            destination = tmp_path / "nas" / "backup"
            source.mkdir(parents=True, exist_ok=True)
            destination.mkdir(parents=True, exist_ok=True)
            mappings = [
                Mapping(
                    source_path=str(source),
                    destination_path=str(destination),
                    label="docs",
                    retention=Retention(max_backups=max_backups),
                    credentials=credentials,
                )
            ]
        return Job(
            job_id=job_id,
            client_hostname=HOSTNAME,
            name="Office documents",
            mode_default=mode,
            schedule=schedule or DailySchedule(days=[1, 2, 3, 4, 5], times=["02:00"]),
            mappings=mappings,
        )

    return _make


@pytest.fixture
def nas_credentials():
    return Credentials(username="backup", password="s3cret", domain="NAS01")


@pytest.fixture
def session_factory():
    """SQLAlchemy session factory bound to a private in-memory database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def success_response():
    """Agent reply for a clean copy, in the agent's PascalCase spelling."""
    return {
        "Success": True,
        "BytesProcessed": 2048,
        "Stats": {
            "TotalFiles": 12,
            "CopiedFiles": 12,
            "SkippedFilesCount": 0,
            "FailedFiles": 0,
        },
        "Warnings": [],
        "Errors": [],
        "LogContent": "robocopy summary\n",
    }
