"""Alert model for backup failures."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped

from backup_orchestrator.core.database import Base


class Alert(Base):
    """Alert raised for a failed or partial backup job.

    ``alert_key`` identifies the condition; at most one unresolved alert
    exists per key.
    """

    __tablename__ = "alerts"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    alert_key: Mapped[str] = Column(String(255), nullable=False, index=True)
    alert_type: Mapped[str] = Column(
        String(50), nullable=False, index=True
    )  # backup_failed, backup_partial
    severity: Mapped[str] = Column(
        String(20), nullable=False, default="warning"
    )  # info, warning, error, critical
    job_id: Mapped[str | None] = Column(String(100), nullable=True, index=True)
    hostname: Mapped[str | None] = Column(String(255), nullable=True)
    run_id: Mapped[str | None] = Column(String(36), nullable=True)
    title: Mapped[str] = Column(String(255), nullable=False)
    message: Mapped[str] = Column(Text, nullable=False)
    details_json: Mapped[str | None] = Column(Text, nullable=True)
    occurrences: Mapped[int] = Column(Integer, default=1)
    is_resolved: Mapped[bool] = Column(
        Integer, default=False
    )  # Store as 0/1 for SQLite compatibility
    created_at: Mapped[datetime] = Column(
        DateTime, default=lambda: datetime.now(UTC), nullable=False, index=True
    )
    last_seen_at: Mapped[datetime | None] = Column(DateTime, nullable=True)
    resolved_at: Mapped[datetime | None] = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Alert {self.alert_key}: {self.title}>"

    @property
    def is_resolved_bool(self) -> bool:
        """Return is_resolved as boolean."""
        return bool(self.is_resolved)
