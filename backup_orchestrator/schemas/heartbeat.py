"""Agent heartbeat Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

BackupStatus = Literal["in_progress", "completed", "partial", "failed"]


class Heartbeat(BaseModel):
    """Last known liveness record for an agent host."""

    hostname: str
    status: str = "online"
    timestamp: datetime
    agent_ip: str | None = None
    agent_port: int | None = None
    backup_status: BackupStatus | None = None
    backup_job_id: str | None = None
    backup_status_timestamp: datetime | None = None


class AgentStatus(BaseModel):
    """Derived liveness view returned by the API."""

    hostname: str
    online: bool
    last_seen: datetime | None = None
    seconds_since_seen: float | None = None
    endpoint: str | None = None
    backup_in_progress: bool = False
    backup_status: BackupStatus | None = None
    backup_job_id: str | None = None
