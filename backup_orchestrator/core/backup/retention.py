"""Version retention for copy-mode mappings.

Existing backups are discovered once at run start. Older naming schemes
are still recognized so folders created before the current
``_s<index>_<timestamp>`` naming keep counting against the slot limit.
After a run, the newest ``slots`` backups are kept and the rest are
deleted through the agent, oldest first.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

from backup_orchestrator.api.services.agent_client import AgentClient
from backup_orchestrator.core.backup.layout import (
    path_variants,
    read_backup_info,
    resolve_existing_path,
    sanitize_label,
    source_folder_name,
)
from backup_orchestrator.core.errors import BackupError
from backup_orchestrator.core.heartbeat import AgentEndpoint
from backup_orchestrator.schemas.job import Job, Mapping
from backup_orchestrator.schemas.run import RetentionDeletion

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SLOTS = 5

_TS = r"\d{4}_\d{2}_\d{2}_\d{2}_\d{2}_\d{2}"
_SOURCE_SUFFIX = re.compile(rf"^(?:s\d+|s\d+_{_TS}|v\d+_s\d+_{_TS}|v\d+_{_TS})$")


@dataclass
class BackupEntry:
    path: str
    name: str
    mtime: datetime
    retention_index: int | None = None


@dataclass
class RetentionSnapshot:
    """Backups that existed for one mapping when the run started."""

    slots: int
    label: str
    backups: list[BackupEntry] = field(default_factory=list)

    def next_index(self) -> int:
        """Slot index for the next backup, rotating through ``1..slots``."""
        for entry in reversed(self.backups):
            if entry.retention_index is not None:
                return (entry.retention_index % self.slots) + 1
        return 1


@dataclass
class RotationPlan:
    keep: list[BackupEntry]
    delete: list[BackupEntry]


def snapshot_key(mapping: Mapping) -> str:
    return "::".join([mapping.destination_path or "", mapping.source_path or "", mapping.label or ""])


def retention_slots(mapping: Mapping, default: int = DEFAULT_RETENTION_SLOTS) -> int:
    max_backups = mapping.retention.max_backups if mapping.retention else 0
    return max_backups if max_backups and max_backups > 0 else default


def job_label(job: Job, mapping: Mapping) -> str:
    return sanitize_label(mapping.label or job.job_id)


def naming_patterns(label: str, mode: str) -> list[re.Pattern]:
    """Folder name patterns, current first, then historical ones."""
    safe = re.escape(label)
    return [
        re.compile(rf"^{safe}_.+_s(\d+)$"),
        re.compile(rf"^{safe}_.+_s(\d+)_{_TS}$"),
        re.compile(rf"^{safe}_.+_v(\d+)_s(\d+)_{_TS}$"),
        re.compile(rf"^{safe}_.+_v(\d+)_{_TS}$"),
        re.compile(rf"^{safe}_{re.escape(mode)}_(\d+)_(.+)$"),
    ]


def owns_backup_name(name: str, label: str, mode: str, folder: str) -> bool:
    """Whether ``name`` was written for the mapping whose source folder is ``folder``.

    The naming patterns only anchor on the label, so mappings of one job
    sharing a destination would otherwise see each other's backups.
    """
    prefix = f"{label}_{folder}_"
    if name.startswith(prefix) and _SOURCE_SUFFIX.match(name[len(prefix):]):
        return True
    legacy = re.match(rf"^{re.escape(label)}_{re.escape(mode)}_\d+_(.+)$", name)
    return bool(legacy) and (legacy.group(1) == folder or legacy.group(1).startswith(f"{folder}_"))


def _owned_by(info: dict | None, source_path: str, destination_path: str | None) -> bool:
    """A sidecar naming another source or destination belongs to another mapping."""
    if not info:
        return True
    if info.get("source") not in (None, source_path):
        return False
    return info.get("destination") in (None, destination_path)


def scan_existing_backups(
    destination_path: str,
    label: str,
    mode: str = "copy",
    source_path: str | None = None,
) -> list[BackupEntry]:
    """Backup folders for ``label`` under the destination, oldest first.

    Passing ``source_path`` restricts the scan to that mapping's own folders.
    """
    base_path = resolve_existing_path(destination_path)
    if not base_path:
        return []

    try:
        names = os.listdir(base_path)
    except OSError as e:
        logger.warning(f"Cannot read destination {destination_path} for retention: {e}")
        return []

    folder = source_folder_name(source_path) if source_path is not None else None
    patterns = naming_patterns(label, mode)
    backups: list[BackupEntry] = []
    for name in names:
        full_path = os.path.join(base_path, name)
        try:
            st = os.stat(full_path)
        except OSError:
            continue
        if not os.path.isdir(full_path):
            continue
        mtime = datetime.fromtimestamp(st.st_mtime, UTC)

        info = read_backup_info(full_path)
        if source_path is not None and not _owned_by(info, source_path, destination_path):
            continue

        match = next((m for m in (p.match(name) for p in patterns) if m), None)
        if match is not None:
            if folder is not None and not owns_backup_name(name, label, mode, folder):
                continue
            retention_index = int(match.group(1))
        else:
            value = info.get("retention_index") if info else None
            if not isinstance(value, int) or isinstance(value, bool):
                continue
            retention_index = value

        backups.append(BackupEntry(path=full_path, name=name, mtime=mtime, retention_index=retention_index))

    backups.sort(key=lambda b: b.mtime)
    return backups


def build_retention_snapshots(job: Job, default_slots: int = DEFAULT_RETENTION_SLOTS) -> dict[str, RetentionSnapshot]:
    """Capture existing backups for every copy-mode mapping before any deletion."""
    snapshots: dict[str, RetentionSnapshot] = {}
    for mapping in job.mappings:
        mode = job.mapping_mode(mapping)
        if mode != "copy":
            continue
        label = job_label(job, mapping)
        snapshots[snapshot_key(mapping)] = RetentionSnapshot(
            slots=retention_slots(mapping, default_slots),
            label=label,
            backups=scan_existing_backups(
                mapping.destination_path, label, mode, source_path=mapping.source_path or ""
            ),
        )
    return snapshots


def plan_rotation(snapshot: RetentionSnapshot, new_backup: BackupEntry) -> RotationPlan:
    """Keep the new backup plus the newest existing ones up to ``slots``."""
    new_variants = set(path_variants(new_backup.path))
    existing = [b for b in snapshot.backups if b.path not in new_variants]
    newest_first = sorted(existing, key=lambda b: b.mtime, reverse=True)

    keep_existing = newest_first[: max(snapshot.slots - 1, 0)]
    delete = sorted(newest_first[len(keep_existing):], key=lambda b: b.mtime)
    return RotationPlan(keep=[new_backup, *keep_existing], delete=delete)


def _verify_deletion(path: str, status: str, warning: str | None) -> tuple[str, str | None]:
    try:
        exists_after = resolve_existing_path(path) is not None
    except OSError as e:
        return status, warning or f"Deletion check failed: {e}"

    if status == "deleted" and exists_after:
        return "delete_verification_failed", warning or "Path still present after deletion"
    if status != "deleted" and not exists_after:
        return "deleted", warning or "Path already absent at deletion time"
    return status, warning


async def delete_backups(
    agent: AgentClient,
    endpoint: AgentEndpoint | None,
    backups: list[BackupEntry],
    credentials: dict | None = None,
) -> list[RetentionDeletion]:
    """Delete expired backups through the agent; failures are recorded, never raised."""
    if not backups:
        return []

    if endpoint is None:
        logger.warning("Cannot apply retention: agent not available")
        return [RetentionDeletion(path=b.path, status="skipped_agent_unavailable") for b in backups]

    try:
        response = await agent.delete_paths(
            endpoint, [{"path": b.path, "credentials": credentials} for b in backups]
        )
    except BackupError as e:
        logger.warning(f"Retention cleanup through agent failed: {e.message}")
        return [RetentionDeletion(path=b.path, status="skipped_agent_error", error=e.message) for b in backups]

    results = response.get("results")
    if not isinstance(results, list):
        logger.warning("Invalid response from agent delete endpoint")
        return [RetentionDeletion(path=b.path, status="skipped_agent_error") for b in backups]

    outcomes = []
    for idx, backup in enumerate(backups):
        item = results[idx] if idx < len(results) and isinstance(results[idx], dict) else {}
        status = item.get("status") or ("deleted" if item.get("success") else "error")
        status, warning = _verify_deletion(backup.path, status, item.get("warning"))
        outcomes.append(RetentionDeletion(
            path=backup.path,
            status=status,
            error=item.get("error"),
            warning=warning,
        ))
    return outcomes
