"""Normalization of agent backup responses.

The agent's wire format has used several spellings for the same fields
over time. Each field is read by probing an ordered list of candidate keys,
first in the ``Stats`` object and then at the top level, and the first
usable value wins.
"""

from dataclasses import dataclass, field
from typing import Any

from backup_orchestrator.core.errors import (
    ErrorCode,
    map_windows_error,
    parse_error_code,
    windows_code_from_message,
)
from backup_orchestrator.schemas.run import MappingStats

SUCCESS_KEYS = ("Success", "success")
ERROR_CODE_KEYS = ("ErrorCode", "errorCode", "error_code")
ERROR_MESSAGE_KEYS = ("ErrorMessage", "errorMessage", "error")
WINDOWS_CODE_KEYS = ("WindowsErrorCode", "windowsErrorCode", "windows_error_code")
AFFECTED_PATH_KEYS = ("AffectedPath", "affectedPath", "affected_path")
STATS_KEYS = ("Stats", "stats")
LOG_CONTENT_KEYS = ("LogContent", "log_content")
LOG_PATH_KEYS = ("LogPath", "log_path")
WARNING_KEYS = ("Warnings", "warnings")
ERROR_KEYS = ("Errors", "errors")
SKIPPED_LIST_KEYS = ("SkippedFiles", "skipped_files")
BLOCKED_LIST_KEYS = (
    "BlockedFiles",
    "blocked_files",
    "BlockedFilesPaths",
    "blockedFilesPaths",
    "BlockedItems",
    "blocked_items",
)
BYTES_KEYS = ("BytesProcessed", "bytesProcessed", "bytes_processed")

STAT_KEYS: dict[str, tuple[str, ...]] = {
    "total_files": ("TotalFiles", "total_files"),
    "copied_files": ("CopiedFiles", "copied_files"),
    "skipped_files": ("SkippedFilesCount", "skipped_files"),
    "blocked_files": ("BlockedFiles", "blocked_files", "BlockedFilesCount", "blocked_files_count"),
    "deleted_files": ("DeletedFiles", "deleted_files", "SyncDeletedFiles", "sync_deleted_files"),
    "updated_files": ("UpdatedFiles", "updated_files", "SyncUpdatedFiles", "sync_updated_files"),
    "sync_skipped_files": ("SyncSkippedFiles", "sync_skipped_files"),
    "failed_files": ("FailedFiles", "failed_files"),
}


@dataclass
class AgentResult:
    """Agent backup response in a fixed internal shape."""

    success: bool
    error_code: ErrorCode | None = None
    error_message: str | None = None
    windows_code: int | None = None
    affected_path: str | None = None
    bytes_processed: int = 0
    stats: MappingStats = field(default_factory=MappingStats)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped_files: list[str] = field(default_factory=list)
    blocked_files: list[str] = field(default_factory=list)
    log_content: str | None = None
    log_path: str | None = None


def _first(sources: list[dict], keys: tuple[str, ...], accept) -> Any:
    for source in sources:
        for key in keys:
            if key in source and source[key] is not None and accept(source[key]):
                return source[key]
    return None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and value.strip().isdigit()


def _is_list(value: Any) -> bool:
    return isinstance(value, list)


def _is_text(value: Any) -> bool:
    return isinstance(value, str)


def _as_messages(values: list | None) -> list[str]:
    return [str(v) for v in (values or []) if v is not None and str(v).strip()]


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "0", "no")
    return bool(value)


def normalize_agent_response(payload: dict[str, Any]) -> AgentResult:
    """Build an ``AgentResult`` from whatever key spelling the agent used."""
    stats_source = _first([payload], STATS_KEYS, lambda v: isinstance(v, dict)) or {}
    sources = [stats_source, payload]
    top = [payload]

    def number(keys: tuple[str, ...], default: int = 0) -> int:
        value = _first(sources, keys, _is_number)
        return int(float(value)) if value is not None else default

    skipped_list = _as_messages(_first(top, SKIPPED_LIST_KEYS, _is_list))
    blocked_list = _as_messages(_first(top, BLOCKED_LIST_KEYS, _is_list)) or skipped_list

    stats = MappingStats(
        total_files=number(STAT_KEYS["total_files"]),
        copied_files=number(STAT_KEYS["copied_files"]),
        skipped_files=number(STAT_KEYS["skipped_files"], len(blocked_list)),
        deleted_files=number(STAT_KEYS["deleted_files"]),
        updated_files=number(STAT_KEYS["updated_files"]),
        sync_skipped_files=number(STAT_KEYS["sync_skipped_files"]),
        failed_files=number(STAT_KEYS["failed_files"]),
    )
    blocked_count = number(STAT_KEYS["blocked_files"], len(blocked_list))
    stats.blocked_files = blocked_count or len(blocked_list) or stats.skipped_files

    bytes_value = _first([payload, stats_source], BYTES_KEYS, _is_number)
    success_value = _first(top, SUCCESS_KEYS, lambda v: True)
    success = True if success_value is None else _as_bool(success_value)

    error_message = _first(top, ERROR_MESSAGE_KEYS, _is_text)
    raw_windows = _first(top, WINDOWS_CODE_KEYS, _is_number)
    windows_code = int(raw_windows) if raw_windows is not None else windows_code_from_message(error_message)

    error_code = None
    if not success:
        raw_code = _first(top, ERROR_CODE_KEYS, _is_text)
        if raw_code:
            error_code = parse_error_code(raw_code)
        else:
            error_code = map_windows_error(windows_code)

    return AgentResult(
        success=success,
        error_code=error_code,
        error_message=error_message,
        windows_code=windows_code,
        affected_path=_first(top, AFFECTED_PATH_KEYS, _is_text),
        bytes_processed=int(float(bytes_value)) if bytes_value is not None else 0,
        stats=stats,
        warnings=_as_messages(_first(top, WARNING_KEYS, _is_list)),
        errors=_as_messages(_first(top, ERROR_KEYS, _is_list)),
        skipped_files=skipped_list,
        blocked_files=blocked_list,
        log_content=_first(top, LOG_CONTENT_KEYS, _is_text),
        log_path=_first(top, LOG_PATH_KEYS, _is_text),
    )
