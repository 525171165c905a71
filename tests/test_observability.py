"""Tests for operation metrics and logging setup."""
import json
import logging

import pytest

from notd_engine.observability import (
    ROOT_LOGGER_NAME,
    MetricsCollector,
    OperationStats,
    configure_logging,
    timed_operation,
    traced,
)


class TestOperationStats:
    def test_average_and_max(self):
        stats = OperationStats()
        stats.add(10.0)
        stats.add(30.0, error="timeout")
        assert stats.to_dict() == {
            "count": 2,
            "errors": 1,
            "total_ms": 40.0,
            "max_ms": 30.0,
            "last_error": "timeout",
            "avg_ms": 20.0,
        }

    def test_error_truncated(self):
        stats = OperationStats()
        stats.add(1.0, error="x" * 500)
        assert len(stats.last_error) == 200


class TestMetricsCollector:
    def test_breakdown_by_key(self, tmp_path):
        collector = MetricsCollector(tmp_path / "metrics.json")
        collector.record("webhook_delivery", 5.0, key=1)
        collector.record("webhook_delivery", 7.0, error="HTTP 503", key=2)
        collector.record("save_content", 3.0)

        snapshot = collector.snapshot()
        assert snapshot["webhook_delivery"]["count"] == 2
        assert snapshot["webhook_delivery"]["by_key"]["2"]["last_error"] == "HTTP 503"
        assert snapshot["webhook_delivery"]["by_key"]["1"]["errors"] == 0
        assert "by_key" not in snapshot["save_content"]

    def test_saved_totals_picked_up_by_next_run(self, tmp_path):
        path = tmp_path / "metrics.json"
        first = MetricsCollector(path)
        first.record("pattern_handler", 2.0, key="properties")
        assert first.save() is True

        second = MetricsCollector(path)
        second.record("pattern_handler", 4.0, key="properties")
        assert second.snapshot()["pattern_handler"]["by_key"]["properties"]["count"] == 2

    @pytest.mark.parametrize("content", ["{not json", '{"save_content": 3}'])
    def test_bad_file_ignored(self, tmp_path, content, caplog):
        path = tmp_path / "metrics.json"
        path.write_text(content, encoding="utf-8")
        assert MetricsCollector(path).snapshot() == {}
        assert "metrics file" in caplog.text

    def test_save_failure_reported(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")
        assert MetricsCollector(blocker / "metrics.json").save() is False


class TestTimedOperation:
    def test_exception_recorded_and_reraised(self, isolated_metrics):
        with pytest.raises(KeyError):
            with timed_operation("pattern_handler", key="broken"):
                raise KeyError("lookup")

        entry = isolated_metrics.snapshot()["pattern_handler"]
        assert entry["errors"] == 1
        assert entry["by_key"]["broken"]["last_error"] == "'lookup'"

    def test_error_detail_marks_failure(self, isolated_metrics):
        with timed_operation("webhook_delivery", key=9) as op:
            op["error"] = "HTTP 500"
        assert isolated_metrics.snapshot()["webhook_delivery"]["by_key"]["9"]["errors"] == 1

    def test_traced(self, isolated_metrics):
        @traced()
        def lookup():
            return [1, 2]

        @traced("named_op")
        def fails():
            raise RuntimeError()

        assert lookup() == [1, 2]
        with pytest.raises(RuntimeError):
            fails()

        snapshot = isolated_metrics.snapshot()
        assert snapshot["lookup"]["count"] == 1
        assert snapshot["named_op"]["last_error"] == "RuntimeError"


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_logger(self):
        engine_logger = logging.getLogger(ROOT_LOGGER_NAME)
        handlers = list(engine_logger.handlers)
        level = engine_logger.level
        yield
        for handler in engine_logger.handlers:
            if handler not in handlers:
                handler.close()
        engine_logger.handlers = handlers
        engine_logger.setLevel(level)

    def test_writes_rotating_file(self, tmp_path):
        log_dir = configure_logging(log_dir=tmp_path / "logs", level=logging.DEBUG, console=False)
        logging.getLogger("notd_engine.services").info("hello from the engine")
        for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
            handler.flush()

        assert logging.getLogger(ROOT_LOGGER_NAME).level == logging.DEBUG
        assert "hello from the engine" in (log_dir / "notd.log").read_text(encoding="utf-8")

    def test_reconfiguring_replaces_handlers(self, tmp_path):
        engine_logger = logging.getLogger(ROOT_LOGGER_NAME)
        before = len(engine_logger.handlers)
        configure_logging(log_dir=tmp_path / "a", console=True)
        configure_logging(log_dir=tmp_path / "b", console=False)
        assert len(engine_logger.handlers) == before + 1
        assert engine_logger.handlers[-1].baseFilename == str(tmp_path / "b" / "notd.log")


def test_snapshot_is_json_serialisable(isolated_metrics):
    with timed_operation("save_content"):
        pass
    assert json.loads(json.dumps(isolated_metrics.snapshot()))["save_content"]["count"] == 1
