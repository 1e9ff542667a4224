"""Alert bookkeeping for backup run outcomes."""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from backup_orchestrator.core.database import SessionLocal
from backup_orchestrator.models.alert import Alert
from backup_orchestrator.schemas.job import Job
from backup_orchestrator.schemas.run import Run

logger = logging.getLogger(__name__)


@dataclass
class AlertResult:
    """Alert touched by a run, and whether it was newly raised."""

    alert_id: int
    alert_key: str
    alert_type: str
    severity: str
    is_new: bool


def failed_alert_key(hostname: str, job_id: str) -> str:
    return f"backup_failed_{hostname}_{job_id}"


def partial_alert_key(hostname: str, job_id: str) -> str:
    return f"backup_partial_{hostname}_{job_id}"


class AlertService:
    """Key-based alerts: a condition that is already active is not raised again."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create_alert(
        self,
        alert_key: str,
        alert_type: str,
        severity: str,
        title: str,
        message: str,
        job_id: str | None = None,
        hostname: str | None = None,
        run_id: str | None = None,
        details: dict | None = None,
    ) -> AlertResult:
        """Create an alert unless an unresolved one with the same key exists.

        Args:
            alert_key: Identity of the alert condition
            alert_type: Type of alert
            severity: Alert severity (info, warning, error, critical)
            title: Short alert title
            message: Detailed alert message
            job_id: Optional related job
            hostname: Optional related agent host
            run_id: Run that raised or repeated the condition
            details: Optional JSON-serializable details

        Returns:
            AlertResult with ``is_new`` False when the condition was already active
        """
        db = self._session_factory()
        try:
            existing = (
                db.query(Alert)
                .filter(Alert.alert_key == alert_key, Alert.is_resolved == 0)
                .first()
            )
            if existing:
                existing.occurrences = (existing.occurrences or 1) + 1
                existing.last_seen_at = datetime.now(UTC)
                existing.run_id = run_id
                db.commit()
                logger.debug(f"Alert already active: {alert_key}")
                return AlertResult(
                    alert_id=existing.id,
                    alert_key=alert_key,
                    alert_type=existing.alert_type,
                    severity=existing.severity,
                    is_new=False,
                )

            alert = Alert(
                alert_key=alert_key,
                alert_type=alert_type,
                severity=severity,
                job_id=job_id,
                hostname=hostname,
                run_id=run_id,
                title=title,
                message=message,
                details_json=json.dumps(details) if details else None,
                is_resolved=0,
                created_at=datetime.now(UTC),
            )
            db.add(alert)
            db.commit()
            db.refresh(alert)
            logger.warning(f"Created alert: {alert_type} - {title}")
            return AlertResult(
                alert_id=alert.id,
                alert_key=alert_key,
                alert_type=alert_type,
                severity=severity,
                is_new=True,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def resolve_alert_by_key(self, alert_key: str) -> bool:
        """Resolve the active alert for a key; returns whether one was resolved."""
        db = self._session_factory()
        try:
            alert = (
                db.query(Alert)
                .filter(Alert.alert_key == alert_key, Alert.is_resolved == 0)
                .first()
            )
            if not alert:
                return False
            alert.is_resolved = 1
            alert.resolved_at = datetime.now(UTC)
            db.commit()
            logger.info(f"Resolved alert {alert_key}")
            return True
        finally:
            db.close()

    def get_active_alerts(self, job_id: str | None = None) -> list[dict[str, Any]]:
        db = self._session_factory()
        try:
            query = db.query(Alert).filter(Alert.is_resolved == 0)
            if job_id:
                query = query.filter(Alert.job_id == job_id)
            return [
                {
                    "id": a.id,
                    "alert_key": a.alert_key,
                    "alert_type": a.alert_type,
                    "severity": a.severity,
                    "title": a.title,
                    "message": a.message,
                    "occurrences": a.occurrences,
                    "created_at": a.created_at.isoformat() if a.created_at else None,
                }
                for a in query.order_by(Alert.created_at.desc()).all()
            ]
        finally:
            db.close()

    # ==========================================================================
    # Backup run helpers
    # ==========================================================================

    def create_backup_failed_alert(self, run: Run, job: Job) -> AlertResult:
        return self.create_alert(
            alert_key=failed_alert_key(job.client_hostname, job.job_id),
            alert_type="backup_failed",
            severity="error",
            title=f"Backup failed: {job.client_hostname}",
            message=f'Job "{job.name or job.job_id}" failed',
            job_id=job.job_id,
            hostname=job.client_hostname,
            run_id=run.run_id,
            details={"errors": [e.message for e in run.errors[-5:]]},
        )

    def create_backup_partial_alert(self, run: Run, job: Job) -> AlertResult:
        return self.create_alert(
            alert_key=partial_alert_key(job.client_hostname, job.job_id),
            alert_type="backup_partial",
            severity="warning",
            title=f"Backup partially completed: {job.client_hostname}",
            message=f'Job "{job.name or job.job_id}" completed partially',
            job_id=job.job_id,
            hostname=job.client_hostname,
            run_id=run.run_id,
            details={"warnings": [w.message for w in run.warnings[-5:]]},
        )

    def resolve_backup_alerts(self, hostname: str, job_id: str) -> None:
        """Resolve both failure and partial alerts after a successful run."""
        self.resolve_alert_by_key(failed_alert_key(hostname, job_id))
        self.resolve_alert_by_key(partial_alert_key(hostname, job_id))
