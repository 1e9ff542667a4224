"""Pydantic schemas for jobs, runs and heartbeats."""

from backup_orchestrator.schemas.heartbeat import AgentStatus, Heartbeat
from backup_orchestrator.schemas.job import (
    Credentials,
    DailySchedule,
    Job,
    Mapping,
    MonthlySchedule,
    OnceSchedule,
    Retention,
    UnknownSchedule,
    WeeklySchedule,
)
from backup_orchestrator.schemas.run import (
    MappingResult,
    MappingStats,
    RetentionDeletion,
    RetentionStatus,
    RetentionSummary,
    Run,
    RunMessage,
)

__all__ = [
    "AgentStatus",
    "Heartbeat",
    "Credentials",
    "DailySchedule",
    "Job",
    "Mapping",
    "MonthlySchedule",
    "OnceSchedule",
    "Retention",
    "UnknownSchedule",
    "WeeklySchedule",
    "MappingResult",
    "MappingStats",
    "RetentionDeletion",
    "RetentionStatus",
    "RetentionSummary",
    "Run",
    "RunMessage",
]
