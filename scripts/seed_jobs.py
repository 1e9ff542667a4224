#!/usr/bin/env python3
"""Seed the database with sample backup jobs for development/testing."""

import sys
from datetime import UTC, datetime
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backup_orchestrator.api.services.storage import SqlHeartbeatStore, SqlJobStore
from backup_orchestrator.core.database import init_db
from backup_orchestrator.schemas import (
    Credentials,
    DailySchedule,
    Heartbeat,
    Job,
    Mapping,
    Retention,
    WeeklySchedule,
)


def sample_jobs() -> list[Job]:
    return [
        Job(
            job_id="office-docs",
            client_hostname="OFFICE-PC01",
            name="Office documents",
            schedule=DailySchedule(days=[1, 2, 3, 4, 5], times=["12:30", "18:00"]),
            mappings=[
                Mapping(
                    source_path="C:\\Users\\office\\Documents",
                    destination_path="\\\\nas01\\backup\\office",
                    label="docs",
                    retention=Retention(max_backups=5),
                    credentials=Credentials(username="backup", password="change-me", domain="NAS01"),
                ),
            ],
        ),
        Job(
            job_id="accounting-mirror",
            client_hostname="ACCOUNTING-PC",
            name="Accounting mirror",
            mode_default="sync",
            schedule=WeeklySchedule(days_of_week=[5], start_time="20:00"),
            mappings=[
                Mapping(
                    source_path="D:\\Accounting",
                    destination_path="\\\\nas01\\mirror\\accounting",
                ),
            ],
        ),
    ]


def main():
    """Create tables and store the sample jobs and heartbeats."""
    print("Initializing database...")
    init_db()

    jobs = SqlJobStore()
    heartbeats = SqlHeartbeatStore()
    if jobs.load_all_jobs():
        print("Database already seeded. Clear data/ folder to re-seed.")
        return

    for job in sample_jobs():
        jobs.save_job(job)
        heartbeats.save_heartbeat(Heartbeat(
            hostname=job.client_hostname,
            timestamp=datetime.now(UTC),
            agent_ip="127.0.0.1",
            agent_port=8081,
        ))
        print(f"  ✓ Created job {job.job_id} for {job.client_hostname}")

    print("\nSeeding complete! Run 'uvicorn backup_orchestrator.main:app --reload' to start.")


if __name__ == "__main__":
    main()
