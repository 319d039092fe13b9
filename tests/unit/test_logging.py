"""Tests for logging helpers."""

from __future__ import annotations

import json
import logging

from loadfleet._internal.logging import _JsonFormatter, get_logger, run_logger, setup_logging


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class TestLogging:
    def test_get_logger_namespace(self):
        assert get_logger("orchestration.worker").name == "loadfleet.orchestration.worker"

    def test_setup_logging_is_idempotent(self):
        logger = setup_logging(logging.INFO)
        count = len(logger.handlers)
        setup_logging(logging.DEBUG)
        assert len(logger.handlers) == count
        assert logger.level == logging.DEBUG

    def test_run_logger_prefix_and_fields(self):
        base = get_logger("tests.run_logger")
        handler = _ListHandler()
        base.addHandler(handler)
        base.setLevel(logging.INFO)
        try:
            run_logger(base, "run-7", "worker-1").info("engine started")
        finally:
            base.removeHandler(handler)

        record = handler.records[0]
        assert record.getMessage() == "[run-7/worker-1] engine started"
        assert record.run_id == "run-7"  # type: ignore[attr-defined]
        assert record.task_id == "worker-1"  # type: ignore[attr-defined]

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord(
            "loadfleet.x", logging.WARNING, __file__, 1, "silent", None, None
        )
        record.run_id = "run-7"
        entry = json.loads(_JsonFormatter().format(record))
        assert entry["level"] == "WARNING"
        assert entry["message"] == "silent"
        assert entry["run_id"] == "run-7"
        assert "task_id" not in entry
