"""Error taxonomy for the backup engine.

Every failure the engine reports carries an ``ErrorCode``. Agent-reported
codes are translated into fixed user-facing messages; codes reported only
as Windows system error numbers are mapped onto the same taxonomy.
"""

import re
from enum import Enum


class ErrorCode(str, Enum):
    """Error kinds understood by the engine."""

    AGENT_UNREACHABLE = "AGENT_UNREACHABLE"
    AGENT_TIMEOUT = "AGENT_TIMEOUT"
    AGENT_INVALID_RESPONSE = "AGENT_INVALID_RESPONSE"
    UNC_INVALID_FORMAT = "UNC_INVALID_FORMAT"
    CREDENTIALS_FORMAT_ERROR = "CREDENTIALS_FORMAT_ERROR"
    NETWORK_PATH_NOT_FOUND = "NETWORK_PATH_NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    SOURCE_NOT_FOUND = "SOURCE_NOT_FOUND"
    DESTINATION_WRITE_ERROR = "DESTINATION_WRITE_ERROR"
    PATH_TOO_LONG = "PATH_TOO_LONG"
    SOURCE_EQUALS_DESTINATION = "SOURCE_EQUALS_DESTINATION"
    PATH_OVERLAP = "PATH_OVERLAP"
    UNKNOWN_AGENT_ERROR = "UNKNOWN_AGENT_ERROR"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_RUNNING = "JOB_RUNNING"
    NO_MAPPINGS = "NO_MAPPINGS"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.AGENT_UNREACHABLE: "Agent unreachable (connection refused or heartbeat expired)",
    ErrorCode.AGENT_TIMEOUT: "Timed out communicating with the agent",
    ErrorCode.AGENT_INVALID_RESPONSE: "The agent returned an invalid response",
    ErrorCode.UNC_INVALID_FORMAT: "Invalid UNC path format",
    ErrorCode.CREDENTIALS_FORMAT_ERROR: "Username already contains a domain; do not set the domain separately",
    ErrorCode.NETWORK_PATH_NOT_FOUND: "Network path unreachable or missing",
    ErrorCode.ACCESS_DENIED: "Access denied to the destination path",
    ErrorCode.INVALID_CREDENTIALS: "Invalid credentials for the network share",
    ErrorCode.SOURCE_NOT_FOUND: "Source path not found",
    ErrorCode.DESTINATION_WRITE_ERROR: "Unable to write to the destination",
    ErrorCode.PATH_TOO_LONG: "Path too long (exceeds the 260 character limit)",
    ErrorCode.SOURCE_EQUALS_DESTINATION: "Source and destination are identical",
    ErrorCode.PATH_OVERLAP: "Source and destination overlap (one contains the other)",
    ErrorCode.UNKNOWN_AGENT_ERROR: "Unknown error reported by the agent",
    ErrorCode.JOB_NOT_FOUND: "Job not found",
    ErrorCode.JOB_RUNNING: "Job is already running",
    ErrorCode.NO_MAPPINGS: "No mappings defined for the job",
    ErrorCode.UNEXPECTED_ERROR: "Unexpected error",
}

# Agent-reported destination problems that fail the mapping outright
# when nothing was transferred.
DESTINATION_ACCESS_ERRORS = frozenset({
    ErrorCode.DESTINATION_WRITE_ERROR,
    ErrorCode.ACCESS_DENIED,
    ErrorCode.INVALID_CREDENTIALS,
    ErrorCode.NETWORK_PATH_NOT_FOUND,
})

# Errors after which retention must not run for the whole job.
CREDENTIAL_ERRORS = frozenset({
    ErrorCode.ACCESS_DENIED,
    ErrorCode.INVALID_CREDENTIALS,
})

WINDOWS_ERROR_MAP: dict[int, ErrorCode] = {
    5: ErrorCode.ACCESS_DENIED,
    53: ErrorCode.NETWORK_PATH_NOT_FOUND,
    64: ErrorCode.NETWORK_PATH_NOT_FOUND,
    67: ErrorCode.NETWORK_PATH_NOT_FOUND,
    1203: ErrorCode.NETWORK_PATH_NOT_FOUND,
    86: ErrorCode.INVALID_CREDENTIALS,
    1219: ErrorCode.INVALID_CREDENTIALS,
    1326: ErrorCode.INVALID_CREDENTIALS,
    2202: ErrorCode.INVALID_CREDENTIALS,
    206: ErrorCode.PATH_TOO_LONG,
}

WINDOWS_CODE_PATTERN = re.compile(r"(?:code|codice)\s+(\d+)", re.IGNORECASE)


def parse_error_code(value: str | None) -> ErrorCode:
    """Normalize a raw agent error code string into an ``ErrorCode``."""
    if not value:
        return ErrorCode.UNKNOWN_AGENT_ERROR
    try:
        return ErrorCode(str(value).strip().upper())
    except ValueError:
        return ErrorCode.UNKNOWN_AGENT_ERROR


def map_windows_error(windows_code: int | None) -> ErrorCode:
    """Map a Windows system error number onto the taxonomy."""
    if windows_code is None:
        return ErrorCode.UNKNOWN_AGENT_ERROR
    return WINDOWS_ERROR_MAP.get(int(windows_code), ErrorCode.UNKNOWN_AGENT_ERROR)


def windows_code_from_message(message: str | None) -> int | None:
    """Extract a Windows error number embedded in a free-text agent error."""
    if not message:
        return None
    match = WINDOWS_CODE_PATTERN.search(message)
    return int(match.group(1)) if match else None


def user_message(code: ErrorCode, fallback: str | None = None) -> str:
    """User-facing message for a code; unknown codes pass the agent's text through."""
    if code == ErrorCode.UNKNOWN_AGENT_ERROR and fallback:
        return fallback
    return ERROR_MESSAGES.get(code) or fallback or ERROR_MESSAGES[ErrorCode.UNEXPECTED_ERROR]


class BackupError(Exception):
    """Base error raised by the backup engine."""

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        *,
        target_path: str | None = None,
        windows_code: int | None = None,
        affected_path: str | None = None,
    ) -> None:
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code.value)
        self.target_path = target_path
        self.windows_code = windows_code
        self.affected_path = affected_path
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "target_path": self.target_path,
            "windows_code": self.windows_code,
            "affected_path": self.affected_path,
        }


class AgentUnreachableError(BackupError):
    """Heartbeat missing, stale or offline, or the connection was refused."""

    def __init__(self, message: str | None = None, **kwargs) -> None:
        super().__init__(ErrorCode.AGENT_UNREACHABLE, message, **kwargs)


class AgentTimeoutError(BackupError):
    """The agent accepted the request but did not answer in time."""

    def __init__(self, message: str | None = None, **kwargs) -> None:
        super().__init__(ErrorCode.AGENT_TIMEOUT, message, **kwargs)


class AgentResponseError(BackupError):
    """The agent answered with something that is not a usable JSON document."""

    def __init__(self, message: str | None = None, **kwargs) -> None:
        super().__init__(ErrorCode.AGENT_INVALID_RESPONSE, message, **kwargs)


class MappingValidationError(BackupError):
    """A mapping failed pre-validation before contacting the agent."""

    def __init__(self, errors: list[tuple[ErrorCode, str]]) -> None:
        self.errors = errors
        first_code = errors[0][0] if errors else ErrorCode.UNEXPECTED_ERROR
        super().__init__(first_code, "; ".join(message for _, message in errors))


class JobNotFoundError(BackupError):
    """No job with the requested id exists."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(ErrorCode.JOB_NOT_FOUND, f"Job {job_id} not found")


class JobRunningError(BackupError):
    """A run for the job is already in flight."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(ErrorCode.JOB_RUNNING, f"Job {job_id} is already running")


class FailureKind(str, Enum):
    """How an explicit agent failure affects the mapping."""

    HARD = "hard"
    SOFT = "soft"


def has_transferred_data(bytes_processed: int, copied_files: int, updated_files: int) -> bool:
    """True when the agent moved anything before reporting a failure."""
    return bytes_processed > 0 or copied_files > 0 or updated_files > 0


def classify_agent_failure(code: ErrorCode, transferred: bool) -> FailureKind:
    """Decide whether an agent-reported failure fails the mapping or downgrades it.

    Destination access problems are hard only when nothing was transferred;
    every other code keeps the partial stats.
    """
    if code in DESTINATION_ACCESS_ERRORS and not transferred:
        return FailureKind.HARD
    return FailureKind.SOFT
