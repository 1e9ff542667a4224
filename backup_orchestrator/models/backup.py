"""Persistence models for jobs, runs and agent heartbeats.

Each record keeps a few indexed key columns and the full validated
document as JSON text.
"""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped

from backup_orchestrator.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobRecord(Base):
    """Stored job definition."""

    __tablename__ = "jobs"

    job_id: Mapped[str] = Column(String(100), primary_key=True)
    client_hostname: Mapped[str] = Column(String(255), nullable=False, index=True)
    enabled: Mapped[bool] = Column(Boolean, default=True, nullable=False)
    document: Mapped[str] = Column(Text, nullable=False)
    updated_at: Mapped[datetime] = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<JobRecord {self.job_id} ({self.client_hostname})>"


class RunRecord(Base):
    """Stored run, rewritten on every incremental save."""

    __tablename__ = "runs"

    run_id: Mapped[str] = Column(String(36), primary_key=True)
    job_id: Mapped[str] = Column(String(100), nullable=False, index=True)
    client_hostname: Mapped[str] = Column(String(255), nullable=False, index=True)
    status: Mapped[str] = Column(
        String(20), nullable=False, default="running", index=True
    )  # running, success, partial, failed
    started_at: Mapped[datetime] = Column(DateTime, nullable=False, index=True)
    ended_at: Mapped[datetime | None] = Column(DateTime, nullable=True)
    bytes_processed: Mapped[int] = Column(Integer, default=0)
    document: Mapped[str] = Column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<RunRecord {self.run_id}: {self.status}>"


class HeartbeatRecord(Base):
    """Last heartbeat received from (or stamped for) an agent host."""

    __tablename__ = "agent_heartbeats"

    hostname: Mapped[str] = Column(String(255), primary_key=True)
    status: Mapped[str] = Column(String(20), nullable=False, default="online")
    timestamp: Mapped[datetime] = Column(DateTime, nullable=False)
    document: Mapped[str] = Column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<HeartbeatRecord {self.hostname}: {self.status}>"
