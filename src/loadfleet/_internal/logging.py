"""Structured logging setup for LoadFleet.

Workers and controllers run as separate processes whose stderr usually
ends up in one log stream, so every record emitted through
:func:`run_logger` carries the run and task identifiers, both in the
human-readable prefix and as fields of the JSON format.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any

_CONTEXT_FIELDS = ("run_id", "task_id")


class _JsonFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Emits one-line JSON objects with keys: timestamp, level, logger, message,
    plus ``run_id`` / ``task_id`` when the record carries them.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            A single-line JSON string.
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


class RunLoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter that tags records with a run (and optional task) id."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        prefix = f"[{extra['run_id']}"
        if extra.get("task_id"):
            prefix += f"/{extra['task_id']}"
        return f"{prefix}] {msg}", kwargs


_TEXT_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"


def _formatter(json_format: bool) -> logging.Formatter:
    if json_format:
        return _JsonFormatter()
    return logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(
    level: int = logging.INFO,
    *,
    json_format: bool = False,
) -> logging.Logger:
    """Attach a stderr handler to the ``loadfleet`` logger and return it.

    Only the first call installs a handler; later calls just move the
    level, so the CLI and the test suite can both call it freely.
    """
    logger = logging.getLogger("loadfleet")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_formatter(json_format))
        logger.addHandler(handler)
        logger.propagate = False
    for installed in logger.handlers:
        installed.setLevel(level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return ``loadfleet.<name>``, e.g. ``get_logger("orchestration.worker")``."""
    return logging.getLogger(f"loadfleet.{name}")


def run_logger(
    logger: logging.Logger, run_id: str, task_id: str | None = None
) -> RunLoggerAdapter:
    """Wrap *logger* so every record is tagged with the run / task id.

    Args:
        logger: Module logger obtained from :func:`get_logger`.
        run_id: Run identifier.
        task_id: Optional task identifier of the emitting participant.

    Returns:
        A logger adapter bound to the identifiers.
    """
    return RunLoggerAdapter(logger, {"run_id": run_id, "task_id": task_id})
