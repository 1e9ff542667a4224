"""Execution of a single mapping against the host's agent."""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from backup_orchestrator.api.services.agent_client import AgentClient
from backup_orchestrator.api.services.agent_response import AgentResult, normalize_agent_response
from backup_orchestrator.api.services.storage import HeartbeatStore
from backup_orchestrator.core.backup.layout import (
    TIMESTAMP_FORMAT,
    build_target_path,
    compute_local_backup_stats,
    mark_backup_complete,
    save_agent_log,
)
from backup_orchestrator.core.backup.retention import RetentionSnapshot, job_label, retention_slots
from backup_orchestrator.core.config import Settings
from backup_orchestrator.core.errors import (
    AgentUnreachableError,
    BackupError,
    ErrorCode,
    FailureKind,
    MappingValidationError,
    classify_agent_failure,
    has_transferred_data,
    user_message,
)
from backup_orchestrator.core.heartbeat import AgentEndpoint, resolve_agent
from backup_orchestrator.schemas.job import Job, Mapping
from backup_orchestrator.schemas.run import MappingResult, Run

logger = logging.getLogger(__name__)

UNC_PATTERN = re.compile(r"^\\\\[^\\]+\\[^\\]+")


def _comparable(path: str) -> str:
    return path.replace("\\", "/").rstrip("/").lower()


def validate_mapping(mapping: Mapping) -> list[tuple[ErrorCode, str]]:
    """Checks run before contacting the agent."""
    errors: list[tuple[ErrorCode, str]] = []

    destination = mapping.destination_path or ""
    if destination.startswith("\\\\") and not UNC_PATTERN.match(destination):
        errors.append((
            ErrorCode.UNC_INVALID_FORMAT,
            "Invalid UNC format. Use: \\\\server\\share\\path",
        ))

    if mapping.credentials:
        if "\\" in (mapping.credentials.username or "") and mapping.credentials.domain:
            errors.append((
                ErrorCode.CREDENTIALS_FORMAT_ERROR,
                "Username already contains the domain; do not set domain separately",
            ))

    source = _comparable(mapping.source_path or "")
    target = _comparable(destination)
    if source and target:
        if source == target:
            errors.append((ErrorCode.SOURCE_EQUALS_DESTINATION, "Source and destination are identical"))
        elif target.startswith(source + "/") or source.startswith(target + "/"):
            errors.append((ErrorCode.PATH_OVERLAP, "Source and destination overlap"))

    return errors


@dataclass
class MappingOutcome:
    """A mapping that completed, fully or partially."""

    result: MappingResult
    log_path: str | None = None


class MappingRunner:
    """Runs one mapping: validate, check liveness, call the agent, interpret.

    Hard failures raise ``BackupError`` carrying the attempted target path;
    everything else comes back as a success or partial ``MappingResult``.
    """

    def __init__(
        self,
        agent: AgentClient,
        heartbeats: HeartbeatStore,
        settings: Settings,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self.agent = agent
        self.heartbeats = heartbeats
        self.settings = settings
        self._now = now_fn or (lambda: datetime.now(UTC))

    def resolve_endpoint(self, hostname: str) -> AgentEndpoint | None:
        heartbeat = self.heartbeats.load_heartbeat(hostname)
        return resolve_agent(
            heartbeat,
            self._now(),
            timedelta(seconds=self.settings.heartbeat_ttl_seconds),
            self.settings.agent_default_port,
        )

    def _build_request(
        self,
        job: Job,
        mapping: Mapping,
        index: int,
        run: Run,
        mode: str,
        target_path: str,
    ) -> dict:
        max_backups = mapping.retention.max_backups if mapping.retention else 0
        return {
            "job_id": job.job_id,
            "sources": [mapping.source_path],
            "destination": target_path,
            "options": {
                "mode": mode,
                "job_id": job.job_id,
                "mapping_index": index,
                "mapping_label": mapping.label or mapping.destination_path or mapping.source_path,
                "credentials": mapping.credentials.model_dump() if mapping.credentials else None,
                "run_id": run.run_id,
                "run_timestamp": run.start.isoformat(),
                "retention": {"max_backups": max_backups},
                "max_backups": max_backups,
                "log_payload": self.settings.backup_log_payload,
                "log_max_bytes": self.settings.backup_log_max_bytes,
            },
        }

    def _base_result(self, mapping: Mapping, index: int, mode: str, target_path: str) -> dict:
        return {
            "index": index,
            "label": mapping.label,
            "source_path": mapping.source_path,
            "destination_path": mapping.destination_path,
            "target_path": target_path,
            "mode": mode,
            "credentials_used": mapping.credentials.echo() if mapping.credentials else None,
        }

    async def execute(
        self,
        job: Job,
        mapping: Mapping,
        index: int,
        run: Run,
        snapshot: RetentionSnapshot | None = None,
    ) -> MappingOutcome:
        mode = job.mapping_mode(mapping)

        validation_errors = validate_mapping(mapping)
        if validation_errors:
            raise MappingValidationError(validation_errors)

        endpoint = self.resolve_endpoint(job.client_hostname)
        if endpoint is None:
            raise AgentUnreachableError(
                f"Agent unreachable or not configured for {job.client_hostname}"
            )

        retention_index = None
        timestamp = None
        target_path = mapping.destination_path
        if mode == "copy":
            retention_index = snapshot.next_index() if snapshot else 1
            started = self._now().astimezone(self.settings.timezone)
            timestamp = started.strftime(TIMESTAMP_FORMAT)
            target_path = build_target_path(
                mapping.destination_path,
                snapshot.label if snapshot else job_label(job, mapping),
                mapping.source_path,
                retention_index,
                started,
            )

        request = self._build_request(job, mapping, index, run, mode, target_path)
        base = self._base_result(mapping, index, mode, target_path)

        try:
            raw = await self.agent.backup(endpoint, request)
        except AgentUnreachableError as e:
            e.target_path = target_path
            raise
        except BackupError as e:
            partial = self._partial_from_disk(job, mapping, run, base, e, retention_index, timestamp)
            if partial is not None:
                return MappingOutcome(result=partial)
            e.target_path = target_path
            raise

        result = normalize_agent_response(raw)
        log_path = save_agent_log(
            self.settings.logs_root,
            job.client_hostname,
            job.job_id,
            run.run_id,
            result.log_content,
            mapping.label or mapping.destination_path or mapping.source_path,
        ) or result.log_path

        warnings = list(result.warnings)
        if result.stats.skipped_files > 0:
            warnings.append(
                f"Skipped or not copied files: {result.stats.skipped_files} from {mapping.source_path}"
            )
        if result.stats.failed_files > 0:
            warnings.append(f"Failed files: {result.stats.failed_files} from {mapping.source_path}")

        if not result.success:
            try:
                failed = self._explicit_failure(mapping, base, result, warnings, log_path)
            except BackupError as e:
                partial = self._partial_from_disk(job, mapping, run, base, e, retention_index, timestamp)
                if partial is None:
                    raise
                partial.log_path = log_path
                return MappingOutcome(result=partial, log_path=log_path)
            return MappingOutcome(result=failed, log_path=log_path)

        status = "partial" if result.errors or result.stats.failed_files > 0 else "success"
        if mode == "copy":
            mark_backup_complete(
                target_path,
                job_id=job.job_id,
                run_id=run.run_id,
                retention_index=retention_index,
                retention_slots=retention_slots(mapping, self.settings.default_retention_slots),
                source=mapping.source_path,
                destination=mapping.destination_path,
                label=mapping.label or job.job_id,
                timestamp=timestamp,
            )

        return MappingOutcome(
            result=MappingResult(
                **base,
                status=status,
                bytes_processed=result.bytes_processed,
                stats=result.stats,
                warnings=warnings,
                errors=result.errors,
                blocked_files=result.blocked_files,
                retention_index=retention_index,
                timestamp=timestamp,
                log_path=log_path,
            ),
            log_path=log_path,
        )

    def _explicit_failure(
        self,
        mapping: Mapping,
        base: dict,
        result: AgentResult,
        warnings: list[str],
        log_path: str | None,
    ) -> MappingResult:
        """Agent said ``success=false``: hard failure or partial with stats kept."""
        code = result.error_code or ErrorCode.UNKNOWN_AGENT_ERROR
        message = user_message(code, result.error_message)
        detail = f" (Windows code: {result.windows_code})" if result.windows_code else ""
        transferred = has_transferred_data(
            result.bytes_processed, result.stats.copied_files, result.stats.updated_files
        )

        if classify_agent_failure(code, transferred) is FailureKind.HARD:
            logger.error(
                f"Agent backup error for {mapping.source_path}: {code.value} {result.error_message or ''}"
            )
            raise BackupError(
                code,
                f"Backup failed: {message}{detail}",
                target_path=base["target_path"],
                windows_code=result.windows_code,
                affected_path=result.affected_path,
            )

        composed = f"Partial backup: {message}{detail}"
        logger.warning(f"{composed} ({mapping.source_path})")
        return MappingResult(
            **base,
            status="partial",
            bytes_processed=result.bytes_processed,
            stats=result.stats,
            warnings=[*warnings, composed],
            errors=result.errors or [composed],
            blocked_files=result.blocked_files,
            error_code=code.value,
            log_path=log_path,
        )

    def _partial_from_disk(
        self,
        job: Job,
        mapping: Mapping,
        run: Run,
        base: dict,
        error: BackupError,
        retention_index: int | None,
        timestamp: str | None,
    ) -> MappingResult | None:
        """Rebuild a partial result from files the agent wrote before failing."""
        disk = compute_local_backup_stats(base["target_path"])
        if disk is None:
            return None

        message = f"Partial backup: {error.message}"
        logger.warning(
            f"{message}; found {disk.total_files} files ({disk.total_bytes} bytes) "
            f"under {base['target_path']}"
        )

        if base["mode"] == "copy":
            mark_backup_complete(
                base["target_path"],
                job_id=job.job_id,
                run_id=run.run_id,
                retention_index=retention_index,
                retention_slots=retention_slots(mapping, self.settings.default_retention_slots),
                source=mapping.source_path,
                destination=mapping.destination_path,
                label=mapping.label or job.job_id,
                timestamp=timestamp,
            )

        return MappingResult(
            **base,
            status="partial",
            bytes_processed=disk.total_bytes,
            stats=disk.as_mapping_stats(),
            warnings=[message],
            errors=[message],
            error_code=error.code.value,
            retention_index=retention_index,
            timestamp=timestamp,
        )
