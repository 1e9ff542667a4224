"""Notification utilities for backup run alerts.

Dispatches run outcome notifications to a generic webhook with severity
thresholds and cooldown-based deduplication.

SECURITY: Webhook URLs and share credentials are sanitized from logs.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import httpx

from backup_orchestrator.core.config import get_settings

logger = logging.getLogger(__name__)

# Regex patterns for sensitive data redaction
WEBHOOK_URL_PATTERN = re.compile(
    r"https?://[^\s\"]+webhook[^\s\"]*|https?://[^\s\"]*hooks\.[^\s\"]*",
    re.IGNORECASE,
)
SENSITIVE_PATTERNS = {
    "password": re.compile(r"(['\"]?(?:password|passwd|pwd)['\"]?\s*[:=]\s*)['\"][^'\"]+['\"]", re.IGNORECASE),
    "secret": re.compile(r"(['\"]?(?:client_secret|secret)['\"]?\s*[:=]\s*)['\"][^'\"]+['\"]", re.IGNORECASE),
    "token": re.compile(r"(['\"]?(?:token|access_token|refresh_token)['\"]?\s*[:=]\s*)['\"][^'\"]+['\"]", re.IGNORECASE),
    "bearer": re.compile(r"(bearer\s+)\S+", re.IGNORECASE),
    "connection_string": re.compile(r"([a-z]+://[^:/\s]+:)[^@\s]+(@)", re.IGNORECASE),
}

SEVERITY_ORDER = {"info": 0, "warning": 1, "error": 2, "critical": 3}


class Severity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class Notification:
    """Notification data structure."""

    title: str
    message: str
    severity: Severity = Severity.INFO
    alert_type: str | None = None
    job_id: str | None = None
    hostname: str | None = None
    run_id: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# Maps (alert_type, job_id) -> last_notification_time
_notification_history: dict[tuple[str, str | None], datetime] = {}


def should_notify(
    alert_type: str,
    job_id: str | None = None,
    cooldown_minutes: int | None = None,
) -> bool:
    """Check if notification should be sent based on deduplication rules.

    Args:
        alert_type: Type of alert (e.g., 'backup_failed', 'backup_partial')
        job_id: Optional job id for more granular tracking
        cooldown_minutes: Optional override for cooldown period

    Returns:
        True if notification should be sent, False if in cooldown
    """
    settings = get_settings()

    if not settings.notification_enabled:
        return False

    cooldown = timedelta(minutes=cooldown_minutes or settings.notification_cooldown_minutes)
    last_sent = _notification_history.get((alert_type, job_id))
    if last_sent and (datetime.now(UTC) - last_sent) < cooldown:
        logger.debug(
            f"Skipping notification for {alert_type}/{job_id}: "
            f"in cooldown period (last sent {last_sent.isoformat()})"
        )
        return False

    return True


def record_notification_sent(alert_type: str, job_id: str | None = None) -> None:
    """Record that a notification was sent for deduplication tracking."""
    _notification_history[(alert_type, job_id)] = datetime.now(UTC)


def severity_meets_threshold(severity: Severity | str, threshold: Severity | str) -> bool:
    """Check if severity meets or exceeds the threshold.

    Severity order: info < warning < error < critical
    """
    sev_val = SEVERITY_ORDER.get(Severity(severity).value, 0)
    thresh_val = SEVERITY_ORDER.get(Severity(threshold).value, 0)
    return sev_val >= thresh_val


def sanitize_log_message(message: str) -> str:
    """Sanitize log message to remove sensitive data.

    Redacts webhook URLs, passwords, tokens and credentials embedded in
    connection strings.
    """
    if not message:
        return message

    sanitized = WEBHOOK_URL_PATTERN.sub("[WEBHOOK_URL_REDACTED]", message)

    def replace_sensitive(match: re.Match) -> str:
        if match.lastindex and match.lastindex >= 1:
            prefix = match.group(1)
            suffix = match.group(2) if match.lastindex >= 2 else ""
            return f"{prefix}[REDACTED]{suffix}"
        return "[REDACTED]"

    for pattern in SENSITIVE_PATTERNS.values():
        sanitized = pattern.sub(replace_sensitive, sanitized)

    return sanitized


def safe_log(level: str, message: str, *args, **kwargs) -> None:
    """Log a message with automatic sanitization of sensitive data."""
    sanitized = sanitize_log_message(message)
    log_func = getattr(logger, level.lower(), logger.info)
    log_func(sanitized, *args, **kwargs)


async def send_webhook_notification(
    notification: Notification,
    webhook_url: str,
) -> dict[str, Any]:
    """Send notification to a generic webhook endpoint.

    SECURITY: Webhook URLs are never logged.
    """
    safe_log("debug", "Sending webhook notification to configured endpoint")

    payload = {
        "title": notification.title,
        "message": notification.message,
        "severity": notification.severity.value,
        "timestamp": datetime.now(UTC).isoformat(),
        "alert_type": notification.alert_type,
        "job_id": notification.job_id,
        "hostname": notification.hostname,
        "run_id": notification.run_id,
        "error_message": notification.error_message,
        "metadata": notification.metadata,
    }

    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(
                webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()

        safe_log("info", f"Webhook notification sent: {notification.title}")
        return {"success": True, "status_code": response.status_code}

    except Exception as e:
        error_msg = sanitize_log_message(str(e))
        safe_log("error", f"Failed to send webhook notification: {error_msg}")
        return {"success": False, "error": "Failed to send webhook notification"}


async def send_notification(notification: Notification) -> dict[str, Any]:
    """Dispatch a notification if enabled, above threshold and out of cooldown."""
    settings = get_settings()

    if not settings.notification_enabled:
        logger.debug("Notifications disabled in settings")
        return {"success": False, "error": "Notifications disabled"}

    if not severity_meets_threshold(notification.severity, settings.notification_min_severity):
        logger.debug(
            f"Notification severity {notification.severity.value} below threshold "
            f"{settings.notification_min_severity}"
        )
        return {
            "success": False,
            "error": f"Severity {notification.severity.value} below threshold",
        }

    if not settings.alert_webhook_url:
        logger.warning("Alert webhook URL not configured")
        return {"success": False, "error": "Alert webhook URL not configured"}

    alert_type = notification.alert_type or "backup"
    if not should_notify(alert_type, notification.job_id):
        return {"success": False, "error": "In cooldown period"}

    result = await send_webhook_notification(notification, settings.alert_webhook_url)
    if result["success"]:
        record_notification_sent(alert_type, notification.job_id)
    return result
