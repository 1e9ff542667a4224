"""Backup directory layout on the destination share.

Naming of new backup folders, the completion marker and metadata sidecar
written into them, and local inspection of what an agent already wrote.
"""

import json
import logging
import ntpath
import os
import posixpath
import re
from dataclasses import dataclass
from datetime import UTC, datetime

from backup_orchestrator.schemas.run import MappingStats

logger = logging.getLogger(__name__)

BACKUP_COMPLETE_MARKER = ".backup_complete"
BACKUP_INFO_FILE = "retention_info.json"
TIMESTAMP_FORMAT = "%Y_%m_%d_%H_%M_%S"
LABEL_MAX_LENGTH = 50

_UNSAFE_LABEL = re.compile(r"[^a-zA-Z0-9_-]")
_UNSAFE_SEGMENT = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_label(value: str | None, fallback: str = "backup") -> str:
    """Job label as used in backup folder names."""
    return _UNSAFE_LABEL.sub("_", value or fallback)[:LABEL_MAX_LENGTH]


def sanitize_segment(value: str | None) -> str:
    """Path segment safe for the local log archive."""
    return _UNSAFE_SEGMENT.sub("_", str(value or "unknown"))


def source_folder_name(source_path: str | None) -> str:
    if not source_path:
        return "backup"
    normalized = source_path.replace("\\", "/").rstrip("/")
    folder = normalized.split("/")[-1] or "backup"
    return _UNSAFE_LABEL.sub("_", folder)


def join_destination(destination: str, name: str) -> str:
    """Join using the separator style of the destination path."""
    if "\\" in destination:
        return ntpath.join(destination, name)
    return posixpath.join(destination, name)


def build_target_path(
    destination: str,
    label: str,
    source_path: str,
    retention_index: int,
    when: datetime,
) -> str:
    """``<destination>/<label>_<source-folder>_s<index>_<YYYY_MM_DD_HH_MM_SS>``."""
    name = f"{label}_{source_folder_name(source_path)}_s{retention_index}_{when.strftime(TIMESTAMP_FORMAT)}"
    return join_destination(destination, name)


def path_variants(raw_path: str | None) -> list[str]:
    """Spellings under which a (possibly UNC) path may be reachable locally."""
    if not raw_path or not raw_path.strip():
        return []

    trimmed = raw_path.strip()
    forward = trimmed.replace("\\", "/")
    candidates = [
        trimmed,
        trimmed.rstrip("\\/"),
        forward,
        forward.rstrip("/"),
        ntpath.normpath(trimmed),
    ]
    if trimmed.startswith("\\\\"):
        candidates.append("//" + trimmed[2:].replace("\\", "/"))

    variants: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in variants:
            variants.append(candidate)
    return variants


def resolve_existing_path(raw_path: str | None) -> str | None:
    """First variant of ``raw_path`` that exists on this host, if any."""
    for candidate in path_variants(raw_path):
        try:
            if os.path.exists(candidate):
                return candidate
        except OSError as e:
            logger.debug(f"Cannot access {candidate}: {e}")
    return None


def path_mtime(raw_path: str | None, fallback: datetime | None = None) -> datetime:
    resolved = resolve_existing_path(raw_path)
    if resolved:
        try:
            return datetime.fromtimestamp(os.stat(resolved).st_mtime, UTC)
        except OSError:
            pass
    return fallback or datetime.now(UTC)


def read_backup_info(backup_path: str) -> dict | None:
    info_path = os.path.join(backup_path, BACKUP_INFO_FILE)
    if not os.path.isfile(info_path):
        return None
    try:
        with open(info_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.debug(f"Unreadable backup info at {info_path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def mark_backup_complete(
    target_path: str,
    *,
    job_id: str,
    run_id: str,
    retention_index: int | None,
    retention_slots: int | None,
    source: str,
    destination: str,
    label: str,
    timestamp: str | None,
) -> bool:
    """Write the completion marker and metadata sidecar into a finished backup.

    Returns False (after logging a warning) when the folder is not writable
    from here; a missing marker never fails the mapping.
    """
    resolved = resolve_existing_path(target_path)
    if not resolved:
        logger.warning(f"Cannot write completion marker, path not reachable: {target_path}")
        return False

    now = datetime.now(UTC).isoformat()
    info = {
        "created_at": now,
        "job_id": job_id,
        "run_id": run_id,
        "retention_index": retention_index,
        "retention_slots": retention_slots,
        "source": source,
        "destination": destination,
        "label": label,
        "timestamp": timestamp,
    }
    try:
        with open(os.path.join(resolved, BACKUP_COMPLETE_MARKER), "w", encoding="utf-8") as f:
            f.write(now)
        with open(os.path.join(resolved, BACKUP_INFO_FILE), "w", encoding="utf-8") as f:
            json.dump(info, f, indent=2)
    except OSError as e:
        logger.warning(f"Failed to write completion marker in {target_path}: {e}")
        return False
    return True


def is_backup_complete(backup_path: str) -> bool:
    return os.path.exists(os.path.join(backup_path, BACKUP_COMPLETE_MARKER))


@dataclass
class DiskStats:
    """What is physically present under a backup folder."""

    total_files: int = 0
    total_bytes: int = 0
    unreadable: int = 0

    def as_mapping_stats(self) -> MappingStats:
        return MappingStats(
            total_files=self.total_files,
            copied_files=self.total_files,
            failed_files=self.unreadable,
        )


def compute_local_backup_stats(target_path: str | None) -> DiskStats | None:
    """Count files and bytes already written under ``target_path``.

    The marker and sidecar are not counted. Returns None when the folder is
    missing or empty.
    """
    resolved = resolve_existing_path(target_path)
    if not resolved or not os.path.isdir(resolved):
        return None

    stats = DiskStats()
    for root, _dirs, files in os.walk(resolved):
        for name in files:
            if name in (BACKUP_COMPLETE_MARKER, BACKUP_INFO_FILE):
                continue
            try:
                size = os.stat(os.path.join(root, name)).st_size
            except OSError:
                stats.unreadable += 1
                continue
            stats.total_files += 1
            stats.total_bytes += size

    if stats.total_files == 0 and stats.total_bytes == 0:
        return None
    return stats


def save_agent_log(
    logs_root: str | os.PathLike,
    hostname: str,
    job_id: str,
    run_id: str,
    content: str | None,
    mapping_key: str | None = None,
) -> str | None:
    """Archive the agent's log for one mapping; returns the file path."""
    if content is None:
        return None

    job_dir = os.path.join(logs_root, sanitize_segment(hostname), sanitize_segment(job_id))
    filename = f"{run_id}_{sanitize_segment(mapping_key)}.log" if mapping_key else f"{run_id}.log"
    log_path = os.path.join(job_dir, filename)
    try:
        os.makedirs(job_dir, exist_ok=True)
        with open(log_path, "w", encoding="utf-8") as f:
            f.write(content)
    except OSError as e:
        logger.warning(f"Failed to save agent log for {hostname}/{job_id}/{run_id}: {e}")
        return None
    return log_path
