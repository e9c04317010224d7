"""Tests for the observability module.

Tests for metrics collection, operation tracing and logging configuration.
"""
import logging
import time
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from medi.observability import (MetricsCollector, configure_logging,
                                timed_operation, traced)


@pytest.fixture
def medi_logger():
    """The package logger, with handlers and level restored afterwards."""
    logger = logging.getLogger("medi")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    @pytest.fixture
    def metrics_collector(self):
        return MetricsCollector()

    def test_record_successful_operation(self, metrics_collector):
        """Test recording a successful operation."""
        metrics_collector.record_operation("test_op", 100.0, True)

        metrics = metrics_collector.get_metrics()
        assert "test_op" in metrics
        assert metrics["test_op"]["count"] == 1
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["error_count"] == 0
        assert metrics["test_op"]["avg_duration_ms"] == 100.0

    def test_record_failed_operation(self, metrics_collector):
        """Test recording a failed operation with error."""
        metrics_collector.record_operation("test_op", 50.0, False, "Test error")

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["count"] == 1
        assert metrics["test_op"]["success_count"] == 0
        assert metrics["test_op"]["error_count"] == 1
        assert metrics["test_op"]["last_error"] == "Test error"
        assert metrics["test_op"]["last_error_time"] is not None

    def test_multiple_operations_aggregated(self, metrics_collector):
        """Test that multiple operations are aggregated correctly."""
        metrics_collector.record_operation("test_op", 100.0, True)
        metrics_collector.record_operation("test_op", 200.0, True)
        metrics_collector.record_operation("test_op", 300.0, False, "Error")

        metrics = metrics_collector.get_metrics()
        assert metrics["test_op"]["count"] == 3
        assert metrics["test_op"]["success_count"] == 2
        assert metrics["test_op"]["error_count"] == 1
        assert metrics["test_op"]["avg_duration_ms"] == 200.0  # (100+200+300)/3
        assert metrics["test_op"]["min_duration_ms"] == 100.0
        assert metrics["test_op"]["max_duration_ms"] == 300.0

    def test_get_summary(self, metrics_collector):
        """Test getting metrics summary."""
        metrics_collector.record_operation("op1", 100.0, True)
        metrics_collector.record_operation("op2", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_success"] == 1
        assert summary["total_errors"] == 1
        assert summary["overall_success_rate"] == 0.5
        assert set(summary["operations_tracked"]) == {"op1", "op2"}

    def test_empty_summary(self, metrics_collector):
        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 0
        assert summary["overall_success_rate"] == 1.0

    def test_reset_metrics(self, metrics_collector):
        """Test resetting all metrics."""
        metrics_collector.record_operation("test_op", 100.0, True)
        assert len(metrics_collector.get_metrics()) == 1

        metrics_collector.reset()
        assert len(metrics_collector.get_metrics()) == 0


class TestTimedOperation:
    """Tests for timed_operation context manager."""

    def test_timed_operation_records_success(self):
        """Test that successful operations are timed and recorded."""
        collector = MetricsCollector()

        with patch("medi.observability.metrics", collector):
            with timed_operation("test_op", key="a") as op:
                time.sleep(0.01)  # 10ms
                op["custom_data"] = "value"

        metrics = collector.get_metrics()
        assert metrics["test_op"]["success_count"] == 1
        assert metrics["test_op"]["avg_duration_ms"] >= 10  # At least 10ms

    def test_timed_operation_records_failure(self):
        """Test that failed operations are recorded and re-raised."""
        collector = MetricsCollector()

        with patch("medi.observability.metrics", collector):
            with pytest.raises(ValueError):
                with timed_operation("test_op"):
                    raise ValueError("Test error")

        metrics = collector.get_metrics()
        assert metrics["test_op"]["error_count"] == 1
        assert "Test error" in metrics["test_op"]["last_error"]


class TestTraced:
    """Tests for the traced decorator."""

    def test_traced_records_under_name(self):
        collector = MetricsCollector()

        @traced("named_op")
        def work(key):
            return [1, 2, 3]

        with patch("medi.observability.metrics", collector):
            assert work(key="a") == [1, 2, 3]

        assert collector.get_metrics()["named_op"]["success_count"] == 1

    def test_traced_defaults_to_function_name(self):
        collector = MetricsCollector()

        @traced()
        def fallible():
            raise RuntimeError("nope")

        with patch("medi.observability.metrics", collector):
            with pytest.raises(RuntimeError):
                fallible()

        assert collector.get_metrics()["fallible"]["error_count"] == 1

    def test_traced_keeps_metadata(self):
        @traced("op")
        def documented():
            """Docstring survives."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring survives."


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_logging_creates_directory(self, tmp_path, medi_logger):
        """Test that configure_logging creates the log directory and file."""
        log_dir = tmp_path / "logs"

        result = configure_logging(log_dir=log_dir)

        assert result == log_dir
        assert log_dir.is_dir()
        assert (log_dir / "medi.log").exists()

    def test_configure_logging_sets_level(self, tmp_path, medi_logger):
        """Test that configure_logging sets the correct log level."""
        configure_logging(log_dir=tmp_path, level=logging.DEBUG)
        assert medi_logger.level == logging.DEBUG

        configure_logging(log_dir=tmp_path, level="warning")
        assert medi_logger.level == logging.WARNING

    def test_reconfigure_replaces_file_handler(self, tmp_path, medi_logger):
        """Calling twice leaves a single rotating file handler."""
        configure_logging(log_dir=tmp_path / "first")
        configure_logging(log_dir=tmp_path / "second")

        file_handlers = [
            h for h in medi_logger.handlers if isinstance(h, RotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename == str(tmp_path / "second" / "medi.log")

    def test_defaults_come_from_config(self, tmp_path, medi_logger, test_config, monkeypatch):
        monkeypatch.setattr(test_config, "log_dir", tmp_path / "configured")
        monkeypatch.setattr(test_config, "log_level", "ERROR")

        assert configure_logging() == tmp_path / "configured"
        assert medi_logger.level == logging.ERROR

    def test_module_loggers_write_to_file(self, tmp_path, medi_logger):
        configure_logging(log_dir=tmp_path, level=logging.INFO)
        logging.getLogger("medi.storage.note_store").info("store message")
        for handler in medi_logger.handlers:
            handler.flush()

        assert "store message" in (tmp_path / "medi.log").read_text(encoding="utf-8")
