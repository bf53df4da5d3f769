"""
Tests for logger functionality.
"""

import pytest

from seasonlink.logger import StructuredLogger, get_logger, reset_logger


class TestStructuredLogger:
    """Test structured logging functionality."""

    def test_logger_creation(self, tmp_path):
        """Logger should be created with zeroed counters."""
        logger = StructuredLogger(name="test", level="INFO", log_dir=tmp_path, enable_console=False)

        assert logger.logger.name == "test"
        assert logger.metrics["comparisons_attempted"] == 0
        assert logger.metrics["audit_write_failures"] == 0

    def test_log_methods(self, structured_logger):
        """All log level methods should work."""
        structured_logger.debug("Debug message")
        structured_logger.info("Info message")
        structured_logger.warning("Warning message")
        structured_logger.error("Error message")
        structured_logger.critical("Critical message")

    def test_context_written_as_json(self, tmp_path, structured_logger):
        """Context keyword arguments are appended as JSON."""
        structured_logger.info("Merged identities", primary_id="abc", mappings=3)

        content = next(tmp_path.glob("*.log")).read_text()
        assert 'Merged identities | Context: {"primary_id": "abc", "mappings": 3}' in content

    def test_comparison_metrics(self, structured_logger):
        """Comparisons and failures are tracked per entity type."""
        for _ in range(3):
            structured_logger.record_comparison("PLAYER")
        structured_logger.record_comparison("TEAM")
        structured_logger.record_comparison_failure("PLAYER", "ValueError")

        metrics = structured_logger.get_metrics()
        assert metrics["comparisons_attempted"] == 4
        assert metrics["comparisons_failed"] == 1
        assert metrics["errors_by_type"]["ValueError"] == 1
        assert metrics["entity_type_stats"]["PLAYER"]["comparisons"] == 3
        assert metrics["entity_type_stats"]["PLAYER"]["failure_rate"] == pytest.approx(0.333, rel=0.01)
        assert metrics["entity_type_stats"]["TEAM"]["failures"] == 0

    def test_match_and_audit_metrics(self, structured_logger):
        """Match, rejection, audit and event counters increment independently."""
        structured_logger.record_match_applied()
        structured_logger.record_match_applied()
        structured_logger.record_match_pending()
        structured_logger.record_record_rejected()
        structured_logger.record_audit_failure("AuditWriteFailure")
        structured_logger.record_event_dropped()

        metrics = structured_logger.get_metrics()
        assert metrics["matches_applied"] == 2
        assert metrics["matches_pending"] == 1
        assert metrics["records_rejected"] == 1
        assert metrics["audit_write_failures"] == 1
        assert metrics["events_dropped"] == 1
        assert metrics["errors_by_type"] == {"ValidationError": 1, "AuditWriteFailure": 1}

    def test_metrics_summary(self, tmp_path, structured_logger):
        """The summary is written to the log."""
        structured_logger.record_comparison("PLAYER")
        structured_logger.log_metrics_summary()

        content = next(tmp_path.glob("*.log")).read_text()
        assert "Resolution Run Metrics" in content
        assert "PLAYER: 1 (0.0% failed)" in content

    def test_log_file_creation(self, tmp_path, structured_logger):
        """Log file should be created in specified directory."""
        structured_logger.info("Test message")

        log_files = list(tmp_path.glob("seasonlink_*.log"))
        assert len(log_files) == 1
        assert "Test message" in log_files[0].read_text()

    def test_file_disabled(self, tmp_path):
        """No file is written when file output is off."""
        logger = StructuredLogger(name="test", log_dir=tmp_path, enable_file=False, enable_console=False)
        logger.info("Nowhere")
        assert list(tmp_path.glob("*.log")) == []


class TestGlobalLogger:
    """Test global logger singleton."""

    def test_get_logger_singleton(self, tmp_path):
        """get_logger should return same instance."""
        reset_logger()

        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger2 = get_logger()

        assert logger1 is logger2

    def test_reset_logger(self, tmp_path):
        """reset_logger should create new instance."""
        reset_logger()

        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger1.record_match_applied()

        reset_logger()

        logger2 = get_logger(log_dir=tmp_path, enable_console=False)
        assert logger2 is not logger1
        assert logger2.metrics["matches_applied"] == 0
