"""Backup execution: mapping runs, retention and on-disk layout."""

from backup_orchestrator.core.backup.executor import JobExecutor, derive_run_status
from backup_orchestrator.core.backup.mapping import MappingRunner, validate_mapping
from backup_orchestrator.core.backup.retention import (
    RetentionSnapshot,
    build_retention_snapshots,
    plan_rotation,
)

__all__ = [
    "JobExecutor",
    "derive_run_status",
    "MappingRunner",
    "validate_mapping",
    "RetentionSnapshot",
    "build_retention_snapshots",
    "plan_rotation",
]
