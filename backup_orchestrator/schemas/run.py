"""Run record Pydantic schemas."""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RunStatus = Literal["running", "success", "partial", "failed"]
MappingStatus = Literal["success", "partial", "failed"]


def utcnow() -> datetime:
    return datetime.now(UTC)


class MappingStats(BaseModel):
    """File counters reported for one mapping, or summed across a run."""

    total_files: int = 0
    copied_files: int = 0
    skipped_files: int = 0
    failed_files: int = 0
    blocked_files: int = 0
    deleted_files: int = 0
    updated_files: int = 0
    sync_skipped_files: int = 0

    def add(self, other: "MappingStats") -> None:
        for name in type(self).model_fields:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class RunMessage(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    code: str | None = None


class RetentionDeletion(BaseModel):
    """Outcome of deleting one expired backup through the agent."""

    path: str
    status: str
    error: str | None = None
    warning: str | None = None


class RetentionSummary(BaseModel):
    slots: int
    found_before_start: int = 0
    kept: list[str] = Field(default_factory=list)
    deleted: int = 0


class RetentionStatus(BaseModel):
    applied: bool
    reason: str | None = None
    deleted: int = 0


class MappingResult(BaseModel):
    """Outcome of one mapping within a run."""

    index: int
    label: str = ""
    source_path: str
    destination_path: str
    target_path: str | None = None
    mode: str = "copy"
    status: MappingStatus
    bytes_processed: int = 0
    stats: MappingStats = Field(default_factory=MappingStats)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    blocked_files: list[str] = Field(default_factory=list)
    error_code: str | None = None
    credentials_used: dict[str, str] | None = None
    retention_index: int | None = None
    timestamp: str | None = None
    log_path: str | None = None
    retention_deleted: list[RetentionDeletion] = Field(default_factory=list)
    retention_summary: RetentionSummary | None = None


class Run(BaseModel):
    """One execution attempt of a job."""

    run_id: str
    job_id: str
    client_hostname: str
    start: datetime = Field(default_factory=utcnow)
    end: datetime | None = None
    status: RunStatus = "running"
    trigger: Literal["scheduled", "manual"] = "scheduled"
    mode_default: str = "copy"
    bytes_processed: int = 0
    target_path: str | None = None
    stats: MappingStats = Field(default_factory=MappingStats)
    mappings: list[MappingResult] = Field(default_factory=list)
    warnings: list[RunMessage] = Field(default_factory=list)
    errors: list[RunMessage] = Field(default_factory=list)
    skipped_files: list[str] = Field(default_factory=list)
    log_path: str | None = None
    retention_status: RetentionStatus | None = None
    schedule: dict[str, Any] | None = None

    @property
    def duration_seconds(self) -> float | None:
        """Calculate run duration in seconds."""
        if self.end and self.start:
            return (self.end - self.start).total_seconds()
        return None
