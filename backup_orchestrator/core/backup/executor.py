"""Job execution: run every mapping, derive the run status, rotate versions.

Mappings of one run execute sequentially against the host's agent.
Independent jobs run concurrently; the only guard is that a job never has
two runs in flight.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from backup_orchestrator.api.services.agent_client import AgentClient
from backup_orchestrator.api.services.alert_service import AlertService
from backup_orchestrator.api.services.storage import HeartbeatStore, RunStore
from backup_orchestrator.core.backup.layout import path_mtime
from backup_orchestrator.core.backup.mapping import MappingRunner
from backup_orchestrator.core.backup.retention import (
    BackupEntry,
    RetentionSnapshot,
    build_retention_snapshots,
    delete_backups,
    plan_rotation,
    snapshot_key,
)
from backup_orchestrator.core.config import Settings, get_settings
from backup_orchestrator.core.errors import (
    CREDENTIAL_ERRORS,
    AgentUnreachableError,
    BackupError,
    ErrorCode,
    JobRunningError,
)
from backup_orchestrator.core.heartbeat import stamp_backup_status
from backup_orchestrator.core.monitoring import PerformanceMonitor, performance_monitor
from backup_orchestrator.core.notifications import Notification, Severity, send_notification
from backup_orchestrator.schemas.job import Job, Mapping
from backup_orchestrator.schemas.run import (
    MappingResult,
    MappingStats,
    RetentionStatus,
    RetentionSummary,
    Run,
    RunMessage,
)

logger = logging.getLogger(__name__)

RETENTION_SKIPPED_FAILED = "Run non riuscito"
RETENTION_SKIPPED_CREDENTIALS = "Credential or access error during run"
RETENTION_SKIPPED_JOB_ERROR = "Job failed"

AGENT_STATUS_BY_RUN_STATUS = {
    "success": "completed",
    "partial": "partial",
    "failed": "failed",
}


def derive_run_status(run: Run) -> str:
    """Terminal status of a run: failed > partial > success.

    With no mapping results the aggregate counters decide using the same
    precedence.
    """
    statuses = [m.status for m in run.mappings]
    if statuses:
        if "failed" in statuses:
            return "failed"
        if "partial" in statuses:
            return "partial"
        return "success"

    has_failures = run.stats.failed_files > 0 or len(run.errors) > 0
    has_skipped_or_warnings = (
        run.stats.skipped_files > 0 or len(run.skipped_files) > 0 or len(run.warnings) > 0
    )
    has_updates_or_copies = (
        run.stats.copied_files > 0 or run.stats.updated_files > 0 or run.bytes_processed > 0
    )
    if has_failures:
        return "partial" if has_updates_or_copies else "failed"
    if has_skipped_or_warnings and has_updates_or_copies:
        return "partial"
    return "success"


class JobExecutor:
    """Executes jobs against their agents and records runs."""

    def __init__(
        self,
        runs: RunStore,
        heartbeats: HeartbeatStore,
        agent: AgentClient | None = None,
        settings: Settings | None = None,
        alert_service: AlertService | None = None,
        notifier: Callable[[Notification], Awaitable[dict]] | None = send_notification,
        monitor: PerformanceMonitor | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or get_settings()
        self.runs = runs
        self.heartbeats = heartbeats
        self.agent = agent or AgentClient(self.settings)
        self.alert_service = alert_service
        self.notifier = notifier
        self.monitor = monitor or performance_monitor
        self._now = now_fn or (lambda: datetime.now(UTC))
        self.mapping_runner = MappingRunner(self.agent, heartbeats, self.settings, self._now)
        self._running_jobs: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()

    def is_job_running(self, job_id: str) -> bool:
        return job_id in self._running_jobs

    @property
    def running_jobs(self) -> dict[str, str]:
        """Job id to run id for every run in flight."""
        return dict(self._running_jobs)

    async def execute_job(self, job: Job, trigger: str = "scheduled") -> Run:
        """Execute a job to a terminal run.

        Raises:
            JobRunningError: a run for this job is already in flight
            BackupError: the run failed as a whole (agent unreachable at
                start, no mappings); the run is recorded as failed first
        """
        if job.job_id in self._running_jobs:
            raise JobRunningError(job.job_id)

        run_id = str(uuid.uuid4())
        self._running_jobs[job.job_id] = run_id
        try:
            return await self._execute(job, run_id, trigger)
        finally:
            self._running_jobs.pop(job.job_id, None)

    async def _execute(self, job: Job, run_id: str, trigger: str) -> Run:
        run = Run(
            run_id=run_id,
            job_id=job.job_id,
            client_hostname=job.client_hostname,
            start=self._now(),
            trigger=trigger,
            mode_default=job.mode_default,
            schedule=job.schedule.model_dump(mode="json") if job.schedule else None,
        )
        self.runs.save_run(run)
        logger.info(f"Starting run {run_id} for job {job.job_id} on {job.client_hostname}")

        metrics = self.monitor.start_run(job.job_id, run_id, job.client_hostname)
        self._stamp_agent_status(job, "in_progress")

        try:
            skip_retention, snapshots = await self._execute_mappings(job, run)
        except Exception as error:
            await self._fail_run(job, run, error)
            self._finish_metrics(metrics, run)
            raise

        run.status = derive_run_status(run)
        run.end = self._now()
        self.runs.save_run(run)
        logger.info(
            f"Run {run_id} for job {job.job_id} finished with status {run.status} "
            f"({run.bytes_processed} bytes)"
        )

        self._stamp_agent_status(job, AGENT_STATUS_BY_RUN_STATUS[run.status])

        if run.status == "failed":
            run.retention_status = RetentionStatus(applied=False, reason=RETENTION_SKIPPED_FAILED)
        elif skip_retention:
            run.retention_status = RetentionStatus(applied=False, reason=RETENTION_SKIPPED_CREDENTIALS)
        else:
            run.retention_status = await self._apply_retention(job, run, snapshots)
        self.runs.save_run(run)

        self._raise_alerts(job, run)
        self._finish_metrics(metrics, run)
        return run

    async def _execute_mappings(
        self, job: Job, run: Run
    ) -> tuple[bool, dict[str, RetentionSnapshot]]:
        """Run each mapping in order.

        Returns whether retention must be skipped, and the snapshots of
        existing backups taken before the first mapping ran.
        """
        if not job.mappings:
            raise BackupError(ErrorCode.NO_MAPPINGS, f"No mappings available for job {job.job_id}")

        if self.mapping_runner.resolve_endpoint(job.client_hostname) is None:
            raise AgentUnreachableError(
                f"Agent unreachable or not configured for {job.client_hostname}"
            )

        snapshots = await asyncio.to_thread(
            build_retention_snapshots, job, self.settings.default_retention_slots
        )
        skip_retention = False
        for index, mapping in enumerate(job.mappings):
            snapshot = snapshots.get(snapshot_key(mapping))
            try:
                outcome = await self.mapping_runner.execute(job, mapping, index, run, snapshot)
                result = outcome.result
                if outcome.log_path and not run.log_path:
                    run.log_path = outcome.log_path
            except BackupError as e:
                logger.error(f"Mapping {index} of job {job.job_id} failed: {e.code.value} {e.message}")
                result = self._failed_result(job, mapping, index, e.code, e.message, e.target_path)
            except Exception as e:
                logger.exception(f"Unexpected error in mapping {index} of job {job.job_id}")
                result = self._failed_result(
                    job, mapping, index, ErrorCode.UNEXPECTED_ERROR,
                    f"Backup failed for mapping {mapping.label or mapping.source_path}: {e}",
                )

            if result.error_code in {code.value for code in CREDENTIAL_ERRORS}:
                skip_retention = True

            self._aggregate(run, result)
            run.mappings.append(result)
            self.runs.save_run(run)

        return skip_retention, snapshots

    def _failed_result(
        self,
        job: Job,
        mapping: Mapping,
        index: int,
        code: ErrorCode,
        message: str,
        target_path: str | None = None,
    ) -> MappingResult:
        return MappingResult(
            index=index,
            label=mapping.label,
            source_path=mapping.source_path,
            destination_path=mapping.destination_path,
            target_path=target_path,
            mode=job.mapping_mode(mapping),
            status="failed",
            stats=MappingStats(failed_files=1),
            errors=[message],
            error_code=code.value,
            credentials_used=mapping.credentials.echo() if mapping.credentials else None,
        )

    def _aggregate(self, run: Run, result: MappingResult) -> None:
        now = self._now()
        run.bytes_processed += result.bytes_processed
        run.target_path = result.target_path or run.target_path
        run.stats.add(result.stats)
        run.skipped_files.extend(result.blocked_files)
        run.warnings.extend(RunMessage(timestamp=now, message=w) for w in result.warnings)
        run.errors.extend(
            RunMessage(timestamp=now, message=e, code=result.error_code) for e in result.errors
        )

    async def _apply_retention(
        self, job: Job, run: Run, snapshots: dict[str, RetentionSnapshot]
    ) -> RetentionStatus:
        endpoint = self.mapping_runner.resolve_endpoint(job.client_hostname)
        total_deleted = 0
        applied = False

        for mapping, result in zip(job.mappings, run.mappings):
            if result.mode != "copy" or not result.target_path or result.status == "failed":
                continue
            snapshot = snapshots.get(snapshot_key(mapping))
            if snapshot is None:
                continue

            new_backup = BackupEntry(
                path=result.target_path,
                name=result.target_path,
                mtime=path_mtime(result.target_path, run.end),
                retention_index=result.retention_index,
            )
            plan = plan_rotation(snapshot, new_backup)
            deletions = await delete_backups(
                self.agent,
                endpoint,
                plan.delete,
                mapping.credentials.model_dump() if mapping.credentials else None,
            )
            deleted = sum(1 for d in deletions if d.status == "deleted")
            total_deleted += deleted
            applied = True

            result.retention_deleted = deletions
            result.retention_summary = RetentionSummary(
                slots=snapshot.slots,
                found_before_start=len(snapshot.backups),
                kept=[b.path for b in plan.keep],
                deleted=deleted,
            )
            if plan.delete:
                logger.info(
                    f"Retention for {mapping.destination_path}: kept {len(plan.keep)}, "
                    f"deleted {deleted}/{len(plan.delete)}"
                )

        return RetentionStatus(
            applied=applied,
            reason=None if applied else "No copy-mode backups to rotate",
            deleted=total_deleted,
        )

    async def _fail_run(self, job: Job, run: Run, error: Exception) -> None:
        """Record a run-level failure, roll back attempted folders, raise alerts."""
        code = error.code.value if isinstance(error, BackupError) else ErrorCode.UNEXPECTED_ERROR.value
        message = error.message if isinstance(error, BackupError) else str(error)

        run.status = "failed"
        run.end = self._now()
        run.errors.append(RunMessage(timestamp=run.end, message=message, code=code))
        self.runs.save_run(run)
        logger.error(f"Run {run.run_id} for job {job.job_id} failed: {message}")

        self._stamp_agent_status(job, "failed")
        run.retention_status = RetentionStatus(applied=False, reason=RETENTION_SKIPPED_JOB_ERROR)
        self.runs.save_run(run)

        await self._rollback(job, run, error)
        self._raise_alerts(job, run)

    async def _rollback(self, job: Job, run: Run, error: Exception | None = None) -> None:
        """Best-effort delete of every target folder this run attempted."""
        credentials_by_target: dict[str, dict | None] = {}
        for mapping, result in zip(job.mappings, run.mappings):
            if result.mode == "copy" and result.target_path:
                credentials_by_target[result.target_path] = (
                    mapping.credentials.model_dump() if mapping.credentials else None
                )
        if isinstance(error, BackupError) and error.target_path:
            credentials_by_target.setdefault(error.target_path, None)

        if not credentials_by_target:
            return

        endpoint = self.mapping_runner.resolve_endpoint(job.client_hostname)
        if endpoint is None:
            logger.warning(
                f"Rollback skipped for job {job.job_id}: agent not available "
                f"({len(credentials_by_target)} paths)"
            )
            return

        try:
            await self.agent.delete_paths(
                endpoint,
                [{"path": path, "credentials": creds} for path, creds in credentials_by_target.items()],
            )
            logger.info(f"Rollback completed for job {job.job_id}: removed {list(credentials_by_target)}")
        except Exception as e:
            logger.warning(f"Rollback failed for job {job.job_id}: {e}")

    def _stamp_agent_status(self, job: Job, backup_status: str) -> None:
        try:
            current = self.heartbeats.load_heartbeat(job.client_hostname)
            self.heartbeats.save_heartbeat(
                stamp_backup_status(current, job.client_hostname, backup_status, job.job_id, self._now())
            )
        except Exception as e:
            logger.error(f"Unable to update backup status for {job.client_hostname}: {e}")

    def _raise_alerts(self, job: Job, run: Run) -> None:
        """Record alert state and notify only when the condition is new."""
        is_new = True
        if self.alert_service:
            try:
                if run.status == "failed":
                    is_new = self.alert_service.create_backup_failed_alert(run, job).is_new
                elif run.status == "partial":
                    is_new = self.alert_service.create_backup_partial_alert(run, job).is_new
                else:
                    self.alert_service.resolve_backup_alerts(job.client_hostname, job.job_id)
            except Exception as e:
                logger.error(f"Alert bookkeeping failed for run {run.run_id}: {e}")

        if run.status in ("failed", "partial") and is_new and self.notifier:
            severity = Severity.ERROR if run.status == "failed" else Severity.WARNING
            last_error = run.errors[-1].message if run.errors else None
            notification = Notification(
                title=f"Backup {run.status}: {job.client_hostname}",
                message=f'Job "{job.name or job.job_id}" finished with status {run.status}',
                severity=severity,
                alert_type=f"backup_{run.status}",
                job_id=job.job_id,
                hostname=job.client_hostname,
                run_id=run.run_id,
                error_message=last_error,
                metadata={"bytes_processed": run.bytes_processed},
            )
            task = asyncio.create_task(self.notifier(notification))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def _finish_metrics(self, metrics, run: Run) -> None:
        metrics.bytes_processed = run.bytes_processed
        metrics.files_processed = run.stats.copied_files + run.stats.updated_files
        metrics.mappings = len(run.mappings)
        metrics.errors = len(run.errors)
        metrics.complete(run.status)
        self.monitor.record_run(metrics)
