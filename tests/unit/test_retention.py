"""Tests for retention discovery, rotation planning and agent deletion."""

import json
import os
from datetime import UTC, datetime, timedelta

import pytest

from backup_orchestrator.core.backup.layout import BACKUP_INFO_FILE
from backup_orchestrator.core.backup.retention import (
    BackupEntry,
    RetentionSnapshot,
    build_retention_snapshots,
    delete_backups,
    plan_rotation,
    retention_slots,
    scan_existing_backups,
    snapshot_key,
)
from backup_orchestrator.core.errors import AgentUnreachableError
from backup_orchestrator.core.heartbeat import AgentEndpoint
from backup_orchestrator.schemas.job import Mapping, Retention

ENDPOINT = AgentEndpoint(ip="10.0.0.5", port=8081)
BASE = datetime(2024, 1, 1, tzinfo=UTC)


def _make_backup(root, name, age_days):
    path = root / name
    path.mkdir()
    stamp = (BASE + timedelta(days=age_days)).timestamp()
    os.utime(path, (stamp, stamp))
    return path


def _entry(name, day, index=None):
    return BackupEntry(path=f"/nas/{name}", name=name, mtime=BASE + timedelta(days=day), retention_index=index)


class TestScanExistingBackups:
    def test_current_and_legacy_names(self, tmp_path):
        _make_backup(tmp_path, "docs_Docs_s2_2024_01_02_00_00_00", 2)
        _make_backup(tmp_path, "docs_Docs_s1", 1)
        _make_backup(tmp_path, "docs_Docs_v3_s4_2024_01_03_00_00_00", 3)
        _make_backup(tmp_path, "docs_Docs_v7_2024_01_04_00_00_00", 4)
        _make_backup(tmp_path, "docs_copy_5_Docs", 5)
        _make_backup(tmp_path, "other_Docs_s1", 6)
        (tmp_path / "docs_Docs_s9_file.txt").write_text("not a folder")

        backups = scan_existing_backups(str(tmp_path), "docs")

        assert [b.name for b in backups] == [
            "docs_Docs_s1",
            "docs_Docs_s2_2024_01_02_00_00_00",
            "docs_Docs_v3_s4_2024_01_03_00_00_00",
            "docs_Docs_v7_2024_01_04_00_00_00",
            "docs_copy_5_Docs",
        ]
        assert [b.retention_index for b in backups] == [1, 2, 4, 7, 5]

    def test_sidecar_fallback(self, tmp_path):
        folder = _make_backup(tmp_path, "renamed-by-hand", 1)
        (folder / BACKUP_INFO_FILE).write_text('{"retention_index": 3}')
        _make_backup(tmp_path, "unrelated", 2)

        backups = scan_existing_backups(str(tmp_path), "docs")

        assert len(backups) == 1
        assert backups[0].retention_index == 3

    def test_missing_destination(self, tmp_path):
        assert scan_existing_backups(str(tmp_path / "missing"), "docs") == []

    def test_restricted_to_the_mapping_source_folder(self, tmp_path):
        _make_backup(tmp_path, "job1_Docs_s1_2024_01_01_00_00_00", 1)
        _make_backup(tmp_path, "job1_Mail_s1_2024_01_01_00_00_00", 2)
        _make_backup(tmp_path, "job1_Docs_Old_s2_2024_01_02_00_00_00", 3)
        _make_backup(tmp_path, "job1_copy_4_Docs", 4)
        _make_backup(tmp_path, "job1_copy_5_Mail", 5)

        backups = scan_existing_backups(str(tmp_path), "job1", "copy", source_path="C:\\Users\\Docs")

        assert [b.name for b in backups] == ["job1_Docs_s1_2024_01_01_00_00_00", "job1_copy_4_Docs"]
        assert [b.retention_index for b in backups] == [1, 4]

    def test_sidecar_of_another_mapping_is_not_counted(self, tmp_path):
        _make_backup(tmp_path, "job1_Docs_s1_2024_01_01_00_00_00", 1)
        foreign = _make_backup(tmp_path, "job1_Docs_s2_2024_01_02_00_00_00", 2)
        (foreign / BACKUP_INFO_FILE).write_text(json.dumps({
            "source": "E:\\Archive\\Docs",
            "destination": str(tmp_path),
            "retention_index": 2,
        }))

        backups = scan_existing_backups(str(tmp_path), "job1", "copy", source_path="C:\\Users\\Docs")

        assert [b.name for b in backups] == ["job1_Docs_s1_2024_01_01_00_00_00"]

    def test_shared_destination_snapshots_are_disjoint(self, tmp_path, make_job):
        _make_backup(tmp_path, "job1_Docs_s1_2024_01_01_00_00_00", 1)
        _make_backup(tmp_path, "job1_Mail_s1_2024_01_01_00_00_00", 2)
        _make_backup(tmp_path, "job1_Mail_s2_2024_01_02_00_00_00", 3)
        job = make_job(job_id="job1", mappings=[
            Mapping(source_path="C:\\Users\\Docs", destination_path=str(tmp_path)),
            Mapping(source_path="C:\\Users\\Mail", destination_path=str(tmp_path)),
        ])

        snapshots = build_retention_snapshots(job)

        docs, mail = (snapshots[snapshot_key(m)] for m in job.mappings)
        assert [b.name for b in docs.backups] == ["job1_Docs_s1_2024_01_01_00_00_00"]
        assert [b.retention_index for b in mail.backups] == [1, 2]
        assert docs.next_index() == 2


class TestSnapshots:
    def test_only_copy_mappings(self, tmp_path, make_job):
        job = make_job(mappings=[
            Mapping(source_path="C:\\A", destination_path=str(tmp_path), label="a", mode="copy"),
            Mapping(source_path="C:\\B", destination_path=str(tmp_path), label="b", mode="sync"),
        ])
        snapshots = build_retention_snapshots(job)
        assert list(snapshots) == [snapshot_key(job.mappings[0])]

    def test_slots(self):
        mapping = Mapping(source_path="a", destination_path="b", retention=Retention(max_backups=3))
        assert retention_slots(mapping) == 3
        mapping.retention.max_backups = 0
        assert retention_slots(mapping) == 5
        assert retention_slots(Mapping(source_path="a", destination_path="b"), default=7) == 7

    def test_next_index_rotates(self):
        snapshot = RetentionSnapshot(slots=3, label="docs", backups=[_entry("a", 1, 2), _entry("b", 2, 3)])
        assert snapshot.next_index() == 1
        assert RetentionSnapshot(slots=3, label="docs").next_index() == 1


class TestPlanRotation:
    def test_seven_existing_five_slots(self):
        """The new backup plus the four newest survive; the three oldest go."""
        existing = [_entry(f"b{i}", i) for i in range(7)]
        snapshot = RetentionSnapshot(slots=5, label="docs", backups=existing)
        new = _entry("new", 30)

        plan = plan_rotation(snapshot, new)

        assert [b.name for b in plan.delete] == ["b0", "b1", "b2"]
        assert len(plan.keep) == 5
        assert plan.keep[0] is new

    def test_under_limit_deletes_nothing(self):
        snapshot = RetentionSnapshot(slots=5, label="docs", backups=[_entry("b0", 0)])
        assert plan_rotation(snapshot, _entry("new", 1)).delete == []

    def test_new_backup_not_counted_twice(self):
        existing = [_entry("b0", 0), _entry("new", 5)]
        snapshot = RetentionSnapshot(slots=2, label="docs", backups=existing)
        plan = plan_rotation(snapshot, _entry("new", 5))
        assert plan.delete == []


class TestDeleteBackups:
    @pytest.mark.asyncio
    async def test_deleted_and_verified(self, tmp_path, fake_agent):
        old = _make_backup(tmp_path, "docs_Docs_s1", 1)
        backups = [BackupEntry(path=str(old), name=old.name, mtime=BASE)]

        outcomes = await delete_backups(fake_agent, ENDPOINT, backups)

        assert [o.status for o in outcomes] == ["deleted"]
        assert not old.exists()

    @pytest.mark.asyncio
    async def test_reported_deleted_but_still_present(self, tmp_path, fake_agent):
        old = _make_backup(tmp_path, "docs_Docs_s1", 1)
        fake_agent.delete_response = {"results": [{"status": "deleted"}]}

        outcomes = await delete_backups(
            fake_agent, ENDPOINT, [BackupEntry(path=str(old), name=old.name, mtime=BASE)]
        )

        assert outcomes[0].status == "delete_verification_failed"

    @pytest.mark.asyncio
    async def test_reported_error_but_already_absent(self, tmp_path, fake_agent):
        fake_agent.delete_response = {"results": [{"status": "error", "error": "not found"}]}

        outcomes = await delete_backups(
            fake_agent, ENDPOINT, [BackupEntry(path=str(tmp_path / "gone"), name="gone", mtime=BASE)]
        )

        assert outcomes[0].status == "deleted"
        assert outcomes[0].warning

    @pytest.mark.asyncio
    async def test_agent_unavailable(self, fake_agent):
        outcomes = await delete_backups(fake_agent, None, [_entry("b0", 0)])
        assert outcomes[0].status == "skipped_agent_unavailable"
        assert fake_agent.delete_calls == []

    @pytest.mark.asyncio
    async def test_agent_error_is_recorded_not_raised(self, fake_agent):
        fake_agent.delete_response = AgentUnreachableError("refused")
        outcomes = await delete_backups(fake_agent, ENDPOINT, [_entry("b0", 0)])
        assert outcomes[0].status == "skipped_agent_error"
        assert outcomes[0].error == "refused"

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, fake_agent):
        assert await delete_backups(fake_agent, ENDPOINT, []) == []
