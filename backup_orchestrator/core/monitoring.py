"""Performance monitoring and metrics collection for backup runs."""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class RunMetrics:
    """Metrics for one backup run."""

    job_id: str
    run_id: str
    hostname: str | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    status: str = "running"
    bytes_processed: int = 0
    files_processed: int = 0
    mappings: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    @property
    def bytes_per_second(self) -> float:
        """Calculate transfer rate."""
        if self.duration_seconds > 0:
            return self.bytes_processed / self.duration_seconds
        return 0.0

    def complete(self, status: str | None = None) -> None:
        """Mark run as complete and calculate duration."""
        if status:
            self.status = status
        self.end_time = datetime.now(UTC)
        self.duration_seconds = (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "run_id": self.run_id,
            "hostname": self.hostname,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status,
            "duration_seconds": round(self.duration_seconds, 2),
            "bytes_processed": self.bytes_processed,
            "files_processed": self.files_processed,
            "mappings": self.mappings,
            "errors": self.errors,
            "bytes_per_second": round(self.bytes_per_second, 2),
        }


class PerformanceMonitor:
    """Centralized performance monitoring."""

    def __init__(self, max_history: int = 1000):
        self._run_metrics: list[RunMetrics] = []
        self._max_history = max_history  # Keep last N metrics

    def start_run(self, job_id: str, run_id: str, hostname: str | None = None) -> RunMetrics:
        """Start tracking a run.

        Usage:
            metrics = monitor.start_run(job.job_id, run.run_id)
            try:
                # ... execute mappings ...
                metrics.bytes_processed = run.bytes_processed
            finally:
                metrics.complete(run.status)
                monitor.record_run(metrics)
        """
        return RunMetrics(job_id=job_id, run_id=run_id, hostname=hostname)

    def record_run(self, metrics: RunMetrics) -> None:
        """Record completed run metrics."""
        if not metrics.end_time:
            metrics.complete()

        self._run_metrics.append(metrics)

        if len(self._run_metrics) > self._max_history:
            self._run_metrics = self._run_metrics[-self._max_history:]

        logger.info(
            f"Run {metrics.run_id} for job {metrics.job_id} finished ({metrics.status}): "
            f"{metrics.files_processed} files, {metrics.bytes_processed} bytes "
            f"in {metrics.duration_seconds:.2f}s"
        )

    def get_run_metrics(self, job_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        """Get run metrics with optional filtering."""
        metrics = self._run_metrics
        if job_id:
            metrics = [m for m in metrics if m.job_id == job_id]
        return [m.to_dict() for m in metrics[-limit:]]

    def get_performance_summary(self) -> dict[str, Any]:
        """Get comprehensive performance summary."""
        by_status: dict[str, int] = {}
        for m in self._run_metrics:
            by_status[m.status] = by_status.get(m.status, 0) + 1

        if self._run_metrics:
            avg_duration = sum(m.duration_seconds for m in self._run_metrics) / len(self._run_metrics)
            total_bytes = sum(m.bytes_processed for m in self._run_metrics)
            total_files = sum(m.files_processed for m in self._run_metrics)
        else:
            avg_duration = 0.0
            total_bytes = 0
            total_files = 0

        return {
            "runs": {
                "total_runs": len(self._run_metrics),
                "by_status": by_status,
                "avg_duration_seconds": round(avg_duration, 2),
                "total_bytes_processed": total_bytes,
                "total_files_processed": total_files,
            },
            "timestamp": datetime.now(UTC).isoformat(),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self._run_metrics.clear()
        logger.info("Performance metrics reset")


# Global monitor instance
performance_monitor = PerformanceMonitor()


def get_performance_dashboard() -> dict[str, Any]:
    """Get data for performance dashboard."""
    return performance_monitor.get_performance_summary()
