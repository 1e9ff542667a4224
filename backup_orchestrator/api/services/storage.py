"""Job, run and heartbeat stores.

The engine only depends on the narrow protocols below; the SQLAlchemy
implementations store each record as a validated JSON document.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractContextManager
from typing import Protocol

from pydantic import ValidationError
from sqlalchemy.orm import Session

from backup_orchestrator.core.database import SessionLocal, get_db_context
from backup_orchestrator.models.backup import HeartbeatRecord, JobRecord, RunRecord
from backup_orchestrator.schemas.heartbeat import Heartbeat
from backup_orchestrator.schemas.job import Job
from backup_orchestrator.schemas.run import Run

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    def load_all_jobs(self) -> list[Job]: ...

    def load_job(self, job_id: str) -> Job | None: ...


class RunStore(Protocol):
    def save_run(self, run: Run) -> None: ...

    def load_runs_for_job(self, job_id: str, limit: int = 50) -> list[Run]: ...


class HeartbeatStore(Protocol):
    def load_heartbeat(self, hostname: str) -> Heartbeat | None: ...

    def save_heartbeat(self, heartbeat: Heartbeat) -> None: ...


class _SqlStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _session(self) -> AbstractContextManager[Session]:
        return get_db_context(self._session_factory)


class SqlJobStore(_SqlStore):
    """Job definitions; records that fail validation are skipped with an error log."""

    def load_all_jobs(self) -> list[Job]:
        with self._session() as db:
            records = db.query(JobRecord).order_by(JobRecord.job_id).all()
            documents = [(r.job_id, r.document) for r in records]

        jobs = []
        for job_id, document in documents:
            try:
                jobs.append(Job.model_validate_json(document))
            except ValidationError as e:
                logger.error(f"Skipping invalid job definition {job_id}: {e}")
        return jobs

    def load_job(self, job_id: str) -> Job | None:
        with self._session() as db:
            record = db.query(JobRecord).filter(JobRecord.job_id == job_id).first()
            document = record.document if record else None

        if document is None:
            return None
        try:
            return Job.model_validate_json(document)
        except ValidationError as e:
            logger.error(f"Invalid job definition {job_id}: {e}")
            return None

    def save_job(self, job: Job) -> None:
        with self._session() as db:
            record = db.get(JobRecord, job.job_id)
            if record is None:
                record = JobRecord(job_id=job.job_id)
                db.add(record)
            record.client_hostname = job.client_hostname
            record.enabled = job.enabled
            record.document = job.model_dump_json()

    def delete_job(self, job_id: str) -> bool:
        with self._session() as db:
            deleted = db.query(JobRecord).filter(JobRecord.job_id == job_id).delete()
        return deleted > 0


class SqlRunStore(_SqlStore):
    """Run records; ``save_run`` upserts so it can be called throughout a run."""

    def save_run(self, run: Run) -> None:
        with self._session() as db:
            record = db.get(RunRecord, run.run_id)
            if record is None:
                record = RunRecord(run_id=run.run_id)
                db.add(record)
            record.job_id = run.job_id
            record.client_hostname = run.client_hostname
            record.status = run.status
            record.started_at = run.start
            record.ended_at = run.end
            record.bytes_processed = run.bytes_processed
            record.document = run.model_dump_json()

    def load_run(self, run_id: str) -> Run | None:
        with self._session() as db:
            record = db.get(RunRecord, run_id)
            document = record.document if record else None
        return Run.model_validate_json(document) if document else None

    def load_runs_for_job(self, job_id: str, limit: int = 50) -> list[Run]:
        with self._session() as db:
            records = (
                db.query(RunRecord)
                .filter(RunRecord.job_id == job_id)
                .order_by(RunRecord.started_at.desc())
                .limit(limit)
                .all()
            )
            documents = [r.document for r in records]
        return [Run.model_validate_json(d) for d in documents]


class SqlHeartbeatStore(_SqlStore):
    def load_heartbeat(self, hostname: str) -> Heartbeat | None:
        with self._session() as db:
            record = db.get(HeartbeatRecord, hostname)
            document = record.document if record else None
        return Heartbeat.model_validate_json(document) if document else None

    def save_heartbeat(self, heartbeat: Heartbeat) -> None:
        with self._session() as db:
            record = db.get(HeartbeatRecord, heartbeat.hostname)
            if record is None:
                record = HeartbeatRecord(hostname=heartbeat.hostname)
                db.add(record)
            record.status = heartbeat.status
            record.timestamp = heartbeat.timestamp
            record.document = heartbeat.model_dump_json()
