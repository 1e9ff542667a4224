"""API services module."""

from backup_orchestrator.api.services.agent_client import AgentClient
from backup_orchestrator.api.services.alert_service import AlertService
from backup_orchestrator.api.services.storage import (
    SqlHeartbeatStore,
    SqlJobStore,
    SqlRunStore,
)

__all__ = [
    "AgentClient",
    "AlertService",
    "SqlHeartbeatStore",
    "SqlJobStore",
    "SqlRunStore",
]
