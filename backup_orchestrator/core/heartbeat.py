"""Agent liveness view derived from heartbeat records."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from backup_orchestrator.schemas.heartbeat import AgentStatus, Heartbeat

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_TTL = timedelta(minutes=2)
DEFAULT_AGENT_PORT = 8081


@dataclass(frozen=True)
class AgentEndpoint:
    """Where to reach a live agent."""

    ip: str
    port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.ip}:{self.port}"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def is_online(
    heartbeat: Heartbeat | None,
    now: datetime | None = None,
    ttl: timedelta = DEFAULT_HEARTBEAT_TTL,
) -> bool:
    """Online iff not explicitly offline and seen within the TTL."""
    if heartbeat is None:
        return False
    if heartbeat.status == "offline":
        return False
    now = now or datetime.now(UTC)
    return now - _aware(heartbeat.timestamp) <= ttl


def resolve_agent(
    heartbeat: Heartbeat | None,
    now: datetime | None = None,
    ttl: timedelta = DEFAULT_HEARTBEAT_TTL,
    default_port: int = DEFAULT_AGENT_PORT,
) -> AgentEndpoint | None:
    """Endpoint of a reachable agent, or None when it is missing, stale or offline."""
    if not is_online(heartbeat, now, ttl):
        return None
    if not heartbeat.agent_ip:
        logger.warning(f"Heartbeat for {heartbeat.hostname} carries no agent address")
        return None
    return AgentEndpoint(ip=heartbeat.agent_ip, port=heartbeat.agent_port or default_port)


def agent_status(
    hostname: str,
    heartbeat: Heartbeat | None,
    now: datetime | None = None,
    ttl: timedelta = DEFAULT_HEARTBEAT_TTL,
    default_port: int = DEFAULT_AGENT_PORT,
) -> AgentStatus:
    """Build the liveness view exposed to API consumers."""
    now = now or datetime.now(UTC)
    if heartbeat is None:
        return AgentStatus(hostname=hostname, online=False)

    last_seen = _aware(heartbeat.timestamp)
    endpoint = resolve_agent(heartbeat, now, ttl, default_port)
    return AgentStatus(
        hostname=hostname,
        online=is_online(heartbeat, now, ttl),
        last_seen=last_seen,
        seconds_since_seen=(now - last_seen).total_seconds(),
        endpoint=endpoint.base_url if endpoint else None,
        backup_in_progress=heartbeat.backup_status == "in_progress",
        backup_status=heartbeat.backup_status,
        backup_job_id=heartbeat.backup_job_id,
    )


def stamp_backup_status(
    heartbeat: Heartbeat | None,
    hostname: str,
    backup_status: str,
    job_id: str,
    now: datetime | None = None,
) -> Heartbeat:
    """Copy of the heartbeat with the backup progress fields updated.

    The agent's own last-seen timestamp is preserved so that stamping
    progress never makes a silent agent look alive.
    """
    now = now or datetime.now(UTC)
    if heartbeat is None:
        return Heartbeat(
            hostname=hostname,
            status="offline",
            timestamp=now,
            backup_status=backup_status,
            backup_job_id=job_id,
            backup_status_timestamp=now,
        )
    return heartbeat.model_copy(update={
        "backup_status": backup_status,
        "backup_job_id": job_id,
        "backup_status_timestamp": now,
    })
