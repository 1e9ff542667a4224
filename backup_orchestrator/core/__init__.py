"""Core module initialization."""

from backup_orchestrator.core.config import Settings, get_settings
from backup_orchestrator.core.database import (
    Base,
    get_db,
    get_db_context,
    init_db,
)
from backup_orchestrator.core.monitoring import (
    PerformanceMonitor,
    RunMetrics,
    get_performance_dashboard,
    performance_monitor,
)
from backup_orchestrator.core.notifications import (
    Notification,
    Severity,
    record_notification_sent,
    send_notification,
    severity_meets_threshold,
    should_notify,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "Base",
    "get_db",
    "get_db_context",
    "init_db",
    # Monitoring
    "PerformanceMonitor",
    "RunMetrics",
    "performance_monitor",
    "get_performance_dashboard",
    # Notifications
    "Notification",
    "Severity",
    "should_notify",
    "send_notification",
    "record_notification_sent",
    "severity_meets_threshold",
]
