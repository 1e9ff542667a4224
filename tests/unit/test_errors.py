"""Tests for the error taxonomy and failure classification."""

import pytest

from backup_orchestrator.core.errors import (
    AgentUnreachableError,
    BackupError,
    ErrorCode,
    FailureKind,
    JobRunningError,
    MappingValidationError,
    classify_agent_failure,
    has_transferred_data,
    map_windows_error,
    parse_error_code,
    user_message,
    windows_code_from_message,
)


class TestErrorCodes:
    def test_parse_known_code(self):
        assert parse_error_code("access_denied") == ErrorCode.ACCESS_DENIED

    @pytest.mark.parametrize("value", [None, "", "SOMETHING_NEW"])
    def test_parse_unknown_code(self, value):
        assert parse_error_code(value) == ErrorCode.UNKNOWN_AGENT_ERROR

    @pytest.mark.parametrize(
        "windows_code,expected",
        [
            (5, ErrorCode.ACCESS_DENIED),
            (53, ErrorCode.NETWORK_PATH_NOT_FOUND),
            (67, ErrorCode.NETWORK_PATH_NOT_FOUND),
            (1326, ErrorCode.INVALID_CREDENTIALS),
            (1219, ErrorCode.INVALID_CREDENTIALS),
            (206, ErrorCode.PATH_TOO_LONG),
            (999, ErrorCode.UNKNOWN_AGENT_ERROR),
            (None, ErrorCode.UNKNOWN_AGENT_ERROR),
        ],
    )
    def test_windows_mapping(self, windows_code, expected):
        assert map_windows_error(windows_code) == expected

    def test_windows_code_in_message(self):
        assert windows_code_from_message("System error code 1326 while connecting") == 1326
        assert windows_code_from_message("no number here") is None

    def test_unknown_code_passes_agent_text_through(self):
        assert user_message(ErrorCode.UNKNOWN_AGENT_ERROR, "disk on fire") == "disk on fire"
        assert user_message(ErrorCode.ACCESS_DENIED, "raw") == "Access denied to the destination path"


class TestExceptions:
    def test_default_message(self):
        error = BackupError(ErrorCode.PATH_TOO_LONG)
        assert "260" in error.message
        assert error.to_dict()["code"] == "PATH_TOO_LONG"

    def test_subclass_carries_code_and_target(self):
        error = AgentUnreachableError("refused", target_path="/nas/x")
        assert error.code == ErrorCode.AGENT_UNREACHABLE
        assert error.target_path == "/nas/x"
        assert isinstance(error, BackupError)

    def test_validation_error_uses_first_code(self):
        error = MappingValidationError([
            (ErrorCode.UNC_INVALID_FORMAT, "bad unc"),
            (ErrorCode.PATH_OVERLAP, "overlap"),
        ])
        assert error.code == ErrorCode.UNC_INVALID_FORMAT
        assert error.message == "bad unc; overlap"

    def test_job_running(self):
        assert JobRunningError("j1").code == ErrorCode.JOB_RUNNING


class TestFailureClassification:
    def test_transfer_predicate(self):
        assert not has_transferred_data(0, 0, 0)
        assert has_transferred_data(1, 0, 0)
        assert has_transferred_data(0, 3, 0)
        assert has_transferred_data(0, 0, 2)

    @pytest.mark.parametrize(
        "code",
        [
            ErrorCode.ACCESS_DENIED,
            ErrorCode.INVALID_CREDENTIALS,
            ErrorCode.NETWORK_PATH_NOT_FOUND,
            ErrorCode.DESTINATION_WRITE_ERROR,
        ],
    )
    def test_destination_errors_are_hard_without_transfer(self, code):
        assert classify_agent_failure(code, transferred=False) is FailureKind.HARD
        assert classify_agent_failure(code, transferred=True) is FailureKind.SOFT

    @pytest.mark.parametrize(
        "code",
        [ErrorCode.SOURCE_NOT_FOUND, ErrorCode.PATH_TOO_LONG, ErrorCode.UNKNOWN_AGENT_ERROR],
    )
    def test_other_errors_downgrade(self, code):
        assert classify_agent_failure(code, transferred=False) is FailureKind.SOFT
