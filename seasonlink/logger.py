"""
Structured logging system for SeasonLink.

Provides centralized logging with multiple output destinations,
log levels, and metrics tracking for monitoring resolution runs.
"""

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks operational counters for resolution runs and the audit trail.
    """

    def __init__(
        self,
        name: str = "seasonlink",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: $SEASONLINK_LOG_DIR or logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()  # Remove existing handlers
        self._lock = threading.Lock()

        # Metrics tracking
        self.metrics = {
            "comparisons_attempted": 0,
            "comparisons_failed": 0,
            "matches_applied": 0,
            "matches_pending": 0,
            "records_rejected": 0,
            "audit_write_failures": 0,
            "events_dropped": 0,
            "errors_by_type": {},
            "entity_type_stats": {},
        }

        # Console handler
        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        # File handler
        if enable_file:
            if log_dir is None:
                log_dir = Path(os.getenv("SEASONLINK_LOG_DIR", "logs"))
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"seasonlink_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def _entity_stats(self, entity_type: str) -> dict:
        stats = self.metrics["entity_type_stats"]
        if entity_type not in stats:
            stats[entity_type] = {"comparisons": 0, "failures": 0}
        return stats[entity_type]

    def _count_error(self, error_type: str):
        errors = self.metrics["errors_by_type"]
        errors[error_type] = errors.get(error_type, 0) + 1

    def record_comparison(self, entity_type: str):
        """Record one pairwise comparison."""
        with self._lock:
            self.metrics["comparisons_attempted"] += 1
            self._entity_stats(entity_type)["comparisons"] += 1

    def record_comparison_failure(self, entity_type: str, error_type: str):
        """Record a pairwise comparison that raised."""
        with self._lock:
            self.metrics["comparisons_failed"] += 1
            self._entity_stats(entity_type)["failures"] += 1
            self._count_error(error_type)

    def record_match_applied(self):
        """Increment applied match counter."""
        with self._lock:
            self.metrics["matches_applied"] += 1

    def record_match_pending(self):
        """Increment pending match counter."""
        with self._lock:
            self.metrics["matches_pending"] += 1

    def record_record_rejected(self):
        """Record an input record that failed validation."""
        with self._lock:
            self.metrics["records_rejected"] += 1
            self._count_error("ValidationError")

    def record_audit_failure(self, error_type: str):
        """Record an audit entry that could not be written."""
        with self._lock:
            self.metrics["audit_write_failures"] += 1
            self._count_error(error_type)

    def record_event_dropped(self):
        """Record an audit event that no subscriber accepted."""
        with self._lock:
            self.metrics["events_dropped"] += 1

    def get_metrics(self) -> dict:
        """Return current metrics."""
        # Calculate failure rates
        metrics_copy = self.metrics.copy()
        for entity_type, stats in metrics_copy["entity_type_stats"].items():
            if stats["comparisons"] > 0:
                stats["failure_rate"] = round(
                    stats["failures"] / stats["comparisons"], 3
                )

        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        total_comparisons = metrics["comparisons_attempted"]
        total_failures = metrics["comparisons_failed"]
        failure_rate = 0
        if total_comparisons > 0:
            failure_rate = round(total_failures / total_comparisons * 100, 1)

        self.info("=== Resolution Run Metrics ===")
        self.info(f"Comparisons: {total_comparisons} ({failure_rate}% failed)")
        self.info(
            f"Matches: {metrics['matches_applied']} applied, "
            f"{metrics['matches_pending']} pending review"
        )
        self.info(f"Rejected records: {metrics['records_rejected']}")
        self.info(f"Audit write failures: {metrics['audit_write_failures']}")

        if metrics["entity_type_stats"]:
            self.info("Comparisons by entity type:")
            for entity_type, stats in metrics["entity_type_stats"].items():
                rate = stats.get("failure_rate", 0) * 100
                self.info(f"  {entity_type}: {stats['comparisons']} ({rate:.1f}% failed)")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "seasonlink",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
