"""Database models module."""

from backup_orchestrator.models.alert import Alert
from backup_orchestrator.models.backup import HeartbeatRecord, JobRecord, RunRecord

__all__ = [
    "Alert",
    "HeartbeatRecord",
    "JobRecord",
    "RunRecord",
]
