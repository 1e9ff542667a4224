"""Tests for job execution, run status and retention."""

import asyncio
import os
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from backup_orchestrator.core.backup.executor import (
    RETENTION_SKIPPED_CREDENTIALS,
    RETENTION_SKIPPED_FAILED,
    RETENTION_SKIPPED_JOB_ERROR,
    JobExecutor,
    derive_run_status,
)
from backup_orchestrator.core.errors import AgentUnreachableError, BackupError, ErrorCode, JobRunningError
from backup_orchestrator.core.notifications import Severity
from backup_orchestrator.schemas.job import Mapping, Retention
from backup_orchestrator.schemas.run import MappingResult, MappingStats, Run, RunMessage

NOW = datetime(2024, 6, 5, 9, 0, tzinfo=UTC)
HOSTNAME = "OFFICE-PC01"

ACCESS_DENIED = {"Success": False, "ErrorCode": "ACCESS_DENIED", "BytesProcessed": 0}


def writes_target(response):
    def _respond(request):
        os.makedirs(request["destination"], exist_ok=True)
        with open(os.path.join(request["destination"], "report.docx"), "w") as f:
            f.write("content")
        return response

    return _respond


def _result(status, index=0):
    return MappingResult(index=index, source_path="C:\\A", destination_path="D:\\B", status=status)


@pytest.fixture
def alert_service():
    service = MagicMock()
    service.create_backup_failed_alert.return_value.is_new = True
    service.create_backup_partial_alert.return_value.is_new = True
    return service


@pytest.fixture
def executor(run_store, heartbeat_store, fake_agent, settings, alert_service, notifier, monitor):
    return JobExecutor(
        run_store,
        heartbeat_store,
        agent=fake_agent,
        settings=settings,
        alert_service=alert_service,
        notifier=notifier,
        monitor=monitor,
        now_fn=lambda: NOW,
    )


async def _drain():
    for _ in range(3):
        await asyncio.sleep(0)


class TestDeriveRunStatus:
    """Failed beats partial beats success."""

    def _run(self, **kwargs):
        return Run(run_id="r", job_id="j", client_hostname="h", **kwargs)

    @pytest.mark.parametrize(
        "statuses,expected",
        [
            (["success", "success"], "success"),
            (["success", "partial"], "partial"),
            (["partial", "failed", "success"], "failed"),
            (["failed"], "failed"),
        ],
    )
    def test_from_mapping_statuses(self, statuses, expected):
        run = self._run(mappings=[_result(s, i) for i, s in enumerate(statuses)])
        assert derive_run_status(run) == expected

    def test_counters_without_mappings(self):
        assert derive_run_status(self._run()) == "success"
        assert derive_run_status(self._run(stats=MappingStats(failed_files=1))) == "failed"
        assert derive_run_status(
            self._run(stats=MappingStats(failed_files=1), bytes_processed=10)
        ) == "partial"
        assert derive_run_status(
            self._run(warnings=[RunMessage(message="w")], stats=MappingStats(copied_files=3))
        ) == "partial"


class TestExecuteJob:
    @pytest.mark.asyncio
    async def test_successful_run(self, executor, make_job, fake_agent, run_store, success_response):
        job = make_job()
        fake_agent.backup_responses = [writes_target(success_response)]

        run = await executor.execute_job(job, trigger="manual")

        assert run.status == "success"
        assert run.trigger == "manual"
        assert run.end == NOW
        assert run.bytes_processed == 2048
        assert run.stats.copied_files == 12
        assert run.target_path.endswith("docs_Documents_s1_2024_06_05_09_00_00")
        assert run.log_path is not None
        assert run_store.runs[run.run_id].status == "success"
        assert not executor.is_job_running(job.job_id)

    @pytest.mark.asyncio
    async def test_each_mapping_is_saved_as_it_completes(self, executor, make_job, fake_agent, run_store, tmp_path):
        mappings = []
        for name in ("Docs", "Mail"):
            (tmp_path / name).mkdir()
            (tmp_path / f"nas-{name}").mkdir()
            mappings.append(
                Mapping(source_path=str(tmp_path / name), destination_path=str(tmp_path / f"nas-{name}"))
            )
        job = make_job(mappings=mappings)

        run = await executor.execute_job(job)

        mapping_counts = [(len(s.mappings), s.status) for s in run_store.saves]
        assert mapping_counts[:3] == [(0, "running"), (1, "running"), (2, "running")]
        assert run.status == "success"
        assert [m.index for m in run.mappings] == [0, 1]

    @pytest.mark.asyncio
    async def test_failed_mapping_does_not_stop_the_next(self, executor, make_job, fake_agent, tmp_path):
        mappings = []
        for name in ("Docs", "Mail"):
            (tmp_path / name).mkdir()
            mappings.append(Mapping(source_path=str(tmp_path / name), destination_path=str(tmp_path / "nas")))
        job = make_job(mappings=mappings)
        fake_agent.backup_responses = [ACCESS_DENIED, {"Success": True, "BytesProcessed": 10}]

        run = await executor.execute_job(job)

        assert [m.status for m in run.mappings] == ["failed", "success"]
        assert run.status == "failed"
        assert run.mappings[0].error_code == "ACCESS_DENIED"
        assert run.mappings[0].stats.failed_files == 1
        assert len(fake_agent.backup_calls) == 2

    @pytest.mark.asyncio
    async def test_heartbeat_carries_backup_status(self, executor, make_job, heartbeat_store):
        job = make_job()

        await executor.execute_job(job)

        heartbeat = heartbeat_store.heartbeats[HOSTNAME]
        assert heartbeat.backup_status == "completed"
        assert heartbeat.backup_job_id == job.job_id
        assert heartbeat.timestamp == NOW

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, executor, make_job, monitor):
        job = make_job()
        await executor.execute_job(job)

        metrics = monitor.get_run_metrics(job.job_id)
        assert len(metrics) == 1
        assert metrics[0]["status"] == "success"
        assert metrics[0]["mappings"] == 1


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_second_run_rejected_while_first_in_flight(self, executor, make_job, fake_agent, run_store):
        job = make_job()
        fake_agent.gate = asyncio.Event()

        first = asyncio.create_task(executor.execute_job(job))
        await fake_agent.started.wait()

        assert executor.is_job_running(job.job_id)
        assert executor.running_jobs[job.job_id] in run_store.runs
        with pytest.raises(JobRunningError):
            await executor.execute_job(job)

        fake_agent.gate.set()
        run = await first

        assert len(run_store.runs) == 1
        assert len(fake_agent.backup_calls) == 1
        assert run.status == "success"

    @pytest.mark.asyncio
    async def test_different_jobs_run_concurrently(self, executor, make_job, fake_agent):
        fake_agent.gate = asyncio.Event()
        first = asyncio.create_task(executor.execute_job(make_job(job_id="a")))
        second = asyncio.create_task(executor.execute_job(make_job(job_id="b")))
        await _drain()

        assert set(executor.running_jobs) == {"a", "b"}
        fake_agent.gate.set()
        await asyncio.gather(first, second)
        assert executor.running_jobs == {}


class TestRunLevelFailure:
    @pytest.mark.asyncio
    async def test_unreachable_agent_fails_run(self, executor, make_job, fake_agent, heartbeat_store, run_store):
        heartbeat_store.heartbeats.clear()
        job = make_job()

        with pytest.raises(AgentUnreachableError):
            await executor.execute_job(job)

        (run,) = run_store.runs.values()
        assert run.status == "failed"
        assert run.errors[-1].code == "AGENT_UNREACHABLE"
        assert run.retention_status.reason == RETENTION_SKIPPED_JOB_ERROR
        assert fake_agent.backup_calls == []
        assert heartbeat_store.heartbeats[HOSTNAME].backup_status == "failed"
        assert not executor.is_job_running(job.job_id)

    @pytest.mark.asyncio
    async def test_job_without_mappings(self, executor, make_job, run_store):
        job = make_job(mappings=[])

        with pytest.raises(BackupError) as exc_info:
            await executor.execute_job(job)

        assert exc_info.value.code == ErrorCode.NO_MAPPINGS
        (run,) = run_store.runs.values()
        assert run.status == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_rolls_back_attempted_targets(self, executor, make_job, fake_agent, tmp_path):
        mappings = []
        for name in ("Docs", "Mail"):
            (tmp_path / name).mkdir()
            mappings.append(Mapping(source_path=str(tmp_path / name), destination_path=str(tmp_path / "nas")))
        job = make_job(mappings=mappings)
        fake_agent.backup_responses = [writes_target({"Success": True}), writes_target({"Success": True})]

        with patch.object(executor, "_aggregate", side_effect=[None, RuntimeError("disk full")]):
            with pytest.raises(RuntimeError):
                await executor.execute_job(job)

        first_target = fake_agent.backup_calls[0]["destination"]
        assert fake_agent.delete_calls == [[{"path": first_target, "credentials": None}]]
        assert not os.path.exists(first_target)


class TestRetention:
    def _existing_backups(self, destination, count):
        paths = []
        for i in range(1, count + 1):
            path = destination / f"docs_Documents_s{i}_2024_05_0{i}_02_00_00"
            path.mkdir()
            ts = datetime(2024, 5, i, 2, 0, tzinfo=UTC).timestamp()
            os.utime(path, (ts, ts))
            paths.append(str(path))
        return paths

    @pytest.mark.asyncio
    async def test_oldest_backups_beyond_slots_are_deleted(self, executor, make_job, fake_agent, tmp_path, success_response):
        job = make_job(max_backups=5)
        existing = self._existing_backups(tmp_path / "nas" / "backup", 7)
        fake_agent.backup_responses = [writes_target(success_response)]

        run = await executor.execute_job(job)

        mapping = run.mappings[0]
        assert mapping.retention_index == 3
        assert [d.path for d in mapping.retention_deleted] == existing[:3]
        assert all(d.status == "deleted" for d in mapping.retention_deleted)
        assert mapping.retention_summary.found_before_start == 7
        assert mapping.retention_summary.kept[0] == mapping.target_path
        assert len(mapping.retention_summary.kept) == 5
        assert run.retention_status.applied is True
        assert run.retention_status.deleted == 3
        for path in existing[3:]:
            assert os.path.isdir(path)

    @pytest.mark.asyncio
    async def test_failed_run_skips_retention(self, executor, make_job, fake_agent, tmp_path):
        job = make_job(max_backups=2)
        self._existing_backups(tmp_path / "nas" / "backup", 4)
        fake_agent.backup_responses = [ACCESS_DENIED]

        run = await executor.execute_job(job)

        assert run.status == "failed"
        assert run.retention_status.applied is False
        assert run.retention_status.reason == RETENTION_SKIPPED_FAILED
        assert fake_agent.delete_calls == []

    @pytest.mark.asyncio
    async def test_credential_error_skips_retention(self, executor, make_job, fake_agent, tmp_path):
        job = make_job(max_backups=2)
        self._existing_backups(tmp_path / "nas" / "backup", 4)
        fake_agent.backup_responses = [{
            "Success": False,
            "ErrorCode": "ACCESS_DENIED",
            "BytesProcessed": 512,
            "Stats": {"CopiedFiles": 2},
        }]

        run = await executor.execute_job(job)

        assert run.status == "partial"
        assert run.retention_status.reason == RETENTION_SKIPPED_CREDENTIALS
        assert fake_agent.delete_calls == []

    @pytest.mark.asyncio
    async def test_sync_mode_has_nothing_to_rotate(self, executor, make_job, fake_agent):
        job = make_job(mode="sync")

        run = await executor.execute_job(job)

        assert run.status == "success"
        assert run.retention_status.applied is False
        assert fake_agent.delete_calls == []

    @pytest.mark.asyncio
    async def test_agent_delete_error_is_recorded(self, executor, make_job, fake_agent, tmp_path, success_response):
        job = make_job(max_backups=2)
        self._existing_backups(tmp_path / "nas" / "backup", 3)
        fake_agent.backup_responses = [writes_target(success_response)]
        fake_agent.delete_response = BackupError(ErrorCode.AGENT_TIMEOUT, "delete timed out")

        run = await executor.execute_job(job)

        assert run.status == "success"
        statuses = {d.status for d in run.mappings[0].retention_deleted}
        assert statuses == {"skipped_agent_error"}
        assert run.retention_status.deleted == 0

    @pytest.mark.asyncio
    async def test_mappings_sharing_a_destination_rotate_only_their_own_backups(
        self, executor, make_job, fake_agent, tmp_path
    ):
        nas = tmp_path / "nas"
        nas.mkdir()
        mappings = []
        existing = {}
        for name in ("Docs", "Mail"):
            (tmp_path / name).mkdir()
            mappings.append(Mapping(
                source_path=str(tmp_path / name),
                destination_path=str(nas),
                retention=Retention(max_backups=2),
            ))
            existing[name] = []
            for i in (1, 2):
                path = nas / f"job1_{name}_s{i}_2024_05_0{i}_02_00_00"
                path.mkdir()
                ts = datetime(2024, 5, i, 2, 0, tzinfo=UTC).timestamp()
                os.utime(path, (ts, ts))
                existing[name].append(str(path))
        job = make_job(job_id="job1", mappings=mappings)
        fake_agent.backup_responses = [writes_target({"Success": True}), writes_target({"Success": True})]

        run = await executor.execute_job(job)

        docs, mail = run.mappings
        assert docs.retention_summary.found_before_start == 2
        assert mail.retention_summary.found_before_start == 2
        assert [d.path for d in docs.retention_deleted] == [existing["Docs"][0]]
        assert [d.path for d in mail.retention_deleted] == [existing["Mail"][0]]
        assert os.path.isdir(existing["Docs"][1])
        assert os.path.isdir(existing["Mail"][1])


class TestAlerts:
    @pytest.mark.asyncio
    async def test_new_failure_notifies(self, executor, make_job, fake_agent, alert_service, notifier):
        job = make_job()
        fake_agent.backup_responses = [ACCESS_DENIED]

        run = await executor.execute_job(job)
        await _drain()

        alert_service.create_backup_failed_alert.assert_called_once()
        notifier.assert_called_once()
        notification = notifier.call_args.args[0]
        assert notification.severity == Severity.ERROR
        assert notification.alert_type == "backup_failed"
        assert notification.run_id == run.run_id

    @pytest.mark.asyncio
    async def test_repeated_failure_does_not_notify(self, executor, make_job, fake_agent, alert_service, notifier):
        alert_service.create_backup_failed_alert.return_value.is_new = False
        fake_agent.backup_responses = [ACCESS_DENIED]

        await executor.execute_job(make_job())
        await _drain()

        notifier.assert_not_called()

    @pytest.mark.asyncio
    async def test_partial_notifies_as_warning(self, executor, make_job, fake_agent, notifier):
        fake_agent.backup_responses = [{"Success": True, "BytesProcessed": 5, "Stats": {"FailedFiles": 1}}]

        await executor.execute_job(make_job())
        await _drain()

        assert notifier.call_args.args[0].severity == Severity.WARNING

    @pytest.mark.asyncio
    async def test_success_resolves_alerts(self, executor, make_job, alert_service, notifier):
        job = make_job()

        await executor.execute_job(job)

        alert_service.resolve_backup_alerts.assert_called_once_with(HOSTNAME, job.job_id)
        notifier.assert_not_called()

    @pytest.mark.asyncio
    async def test_alert_store_failure_does_not_fail_run(self, executor, make_job, alert_service):
        alert_service.resolve_backup_alerts.side_effect = RuntimeError("database locked")

        run = await executor.execute_job(make_job())

        assert run.status == "success"
