"""Job definition Pydantic schemas."""

from datetime import date
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

BackupMode = Literal["copy", "sync"]


class Credentials(BaseModel):
    """Network share credentials passed through to the agent."""

    type: str = "nas"
    username: str = ""
    password: str = ""
    domain: str = ""

    def echo(self) -> dict[str, str]:
        """Credential summary safe to store in a run record."""
        return {"type": self.type or "nas", "username": self.username, "domain": self.domain}


class Retention(BaseModel):
    """Version retention for copy-mode mappings."""

    max_backups: int = 5


class Mapping(BaseModel):
    """One source to destination pair within a job."""

    source_path: str
    destination_path: str
    mode: BackupMode | None = None
    label: str = ""
    retention: Retention | None = None
    credentials: Credentials | None = None


class OnceSchedule(BaseModel):
    type: Literal["once"] = "once"
    start_date: date | None = None
    start_time: str = "00:00"


class DailySchedule(BaseModel):
    """Runs at each of ``times`` on the given weekdays (0=Sunday..6=Saturday)."""

    type: Literal["daily"] = "daily"
    days: list[int] | None = None
    times: list[str] = Field(default_factory=list)
    start_time: str | None = None


class WeeklySchedule(BaseModel):
    """Runs at ``start_time`` on ISO weekdays (1=Monday..7=Sunday)."""

    type: Literal["weekly"] = "weekly"
    days_of_week: list[int] = Field(default_factory=lambda: [1])
    every_n_weeks: int = Field(default=1, ge=1)
    start_time: str = "00:00"


class MonthlySchedule(BaseModel):
    type: Literal["monthly"] = "monthly"
    days_of_month: list[int] = Field(default_factory=lambda: [1])
    start_time: str = "00:00"


class UnknownSchedule(BaseModel):
    """Schedule with a type this engine does not understand; never scheduled."""

    model_config = ConfigDict(extra="allow")

    type: str


KnownSchedule = Annotated[
    OnceSchedule | DailySchedule | WeeklySchedule | MonthlySchedule,
    Field(discriminator="type"),
]

Schedule = Annotated[KnownSchedule | UnknownSchedule, Field(union_mode="left_to_right")]


class Job(BaseModel):
    """Backup job bound to one client host."""

    job_id: str
    client_hostname: str
    name: str | None = None
    enabled: bool = True
    mode_default: BackupMode = "copy"
    schedule: Schedule | None = None
    mappings: list[Mapping] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def mapping_mode(self, mapping: Mapping) -> str:
        """Effective mode for a mapping, falling back to the job default."""
        return (mapping.mode or self.mode_default or "copy").lower()
