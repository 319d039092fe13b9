"""Control-plane message types exchanged between controller and workers.

Every message carries the run identifier and the emitting task identifier.
Recipients drop messages whose run identifier does not match the run they
are executing. The set of message kinds is closed: ``MESSAGE_TYPES`` maps
each wire ``kind`` to its class, and handlers are expected to cover all of
them.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar

from loadfleet._internal.errors import ProtocolError
from loadfleet.metrics.models import WorkerMetrics

CONTROLLER_ID = "controller"


def control_topic(run_id: str) -> str:
    """Return the single control topic every participant of a run uses."""
    return f"run/{run_id}/control"


@dataclass(frozen=True)
class _Message:
    kind: ClassVar[str] = ""

    run_id: str
    task_id: str
    sent_at: float = field(default_factory=time.time, kw_only=True)

    def _payload(self) -> dict[str, Any]:
        return {}

    @classmethod
    def _from_payload(
        cls, run_id: str, task_id: str, sent_at: float, payload: dict[str, Any]
    ) -> _Message:
        return cls(run_id, task_id, sent_at=sent_at)


@dataclass(frozen=True)
class Hello(_Message):
    """Worker registration (worker -> controller)."""

    kind: ClassVar[str] = "hello"


@dataclass(frozen=True)
class Ready(_Message):
    """Worker finished local setup (worker -> controller)."""

    kind: ClassVar[str] = "ready"


@dataclass(frozen=True)
class Start(_Message):
    """Start barrier release (controller -> all).

    Attributes:
        start_at: Wall-clock time to start the engine, or None for now.
    """

    kind: ClassVar[str] = "start"

    start_at: float | None = None

    def _payload(self) -> dict[str, Any]:
        return {"start_at": self.start_at}

    @classmethod
    def _from_payload(
        cls, run_id: str, task_id: str, sent_at: float, payload: dict[str, Any]
    ) -> Start:
        start_at = payload.get("start_at")
        return cls(
            run_id,
            task_id,
            start_at=float(start_at) if start_at is not None else None,
            sent_at=sent_at,
        )


@dataclass(frozen=True)
class Progress(_Message):
    """Periodic metrics sample (worker -> controller)."""

    kind: ClassVar[str] = "progress"

    metrics: WorkerMetrics = field(default_factory=WorkerMetrics)

    def _payload(self) -> dict[str, Any]:
        return {"metrics": self.metrics.to_dict()}

    @classmethod
    def _from_payload(
        cls, run_id: str, task_id: str, sent_at: float, payload: dict[str, Any]
    ) -> Progress:
        return cls(
            run_id,
            task_id,
            metrics=WorkerMetrics.from_dict(payload["metrics"]),
            sent_at=sent_at,
        )


@dataclass(frozen=True)
class Finished(_Message):
    """Engine exited normally, or was cancelled with partial results.

    Attributes:
        metrics: Final cumulative metrics including the encoded histogram.
        partial: True if the engine was stopped by a Cancel.
    """

    kind: ClassVar[str] = "finished"

    metrics: WorkerMetrics = field(default_factory=WorkerMetrics)
    partial: bool = False

    def _payload(self) -> dict[str, Any]:
        return {"metrics": self.metrics.to_dict(), "partial": self.partial}

    @classmethod
    def _from_payload(
        cls, run_id: str, task_id: str, sent_at: float, payload: dict[str, Any]
    ) -> Finished:
        return cls(
            run_id,
            task_id,
            metrics=WorkerMetrics.from_dict(payload["metrics"]),
            partial=bool(payload.get("partial", False)),
            sent_at=sent_at,
        )


@dataclass(frozen=True)
class Failed(_Message):
    """Worker failure with a single reason (worker -> controller)."""

    kind: ClassVar[str] = "failed"

    reason: str = ""

    def _payload(self) -> dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def _from_payload(
        cls, run_id: str, task_id: str, sent_at: float, payload: dict[str, Any]
    ) -> Failed:
        return cls(run_id, task_id, reason=str(payload["reason"]), sent_at=sent_at)


@dataclass(frozen=True)
class Cancel(_Message):
    """Stop the run (controller -> all, or an external caller -> controller)."""

    kind: ClassVar[str] = "cancel"

    reason: str = ""

    def _payload(self) -> dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def _from_payload(
        cls, run_id: str, task_id: str, sent_at: float, payload: dict[str, Any]
    ) -> Cancel:
        return cls(
            run_id, task_id, reason=str(payload.get("reason", "")), sent_at=sent_at
        )


@dataclass(frozen=True)
class Heartbeat(_Message):
    """Liveness signal sent even when there are no new metrics."""

    kind: ClassVar[str] = "heartbeat"


ControlMessage = Hello | Ready | Start | Progress | Finished | Failed | Cancel | Heartbeat

MESSAGE_TYPES: dict[str, type[_Message]] = {
    cls.kind: cls
    for cls in (Hello, Ready, Start, Progress, Finished, Failed, Cancel, Heartbeat)
}


def encode_message(message: ControlMessage) -> str:
    """Serialize a control message to a JSON string.

    Args:
        message: Message to encode.

    Returns:
        One-line JSON with ``kind``, ``run_id``, ``task_id``, ``sent_at`` and
        the variant-specific ``payload``.
    """
    return json.dumps(
        {
            "kind": message.kind,
            "run_id": message.run_id,
            "task_id": message.task_id,
            "sent_at": message.sent_at,
            "payload": message._payload(),
        }
    )


def decode_message(data: str | bytes) -> ControlMessage:
    """Parse a JSON string produced by :func:`encode_message`.

    Args:
        data: Raw JSON text.

    Returns:
        The decoded message.

    Raises:
        ProtocolError: If the text is not JSON, the kind is unknown, or a
            required field is missing or malformed.
    """
    try:
        envelope = json.loads(data)
    except ValueError as exc:
        msg = f"control message is not valid JSON: {exc}"
        raise ProtocolError(msg) from exc

    if not isinstance(envelope, dict):
        msg = "control message must be a JSON object"
        raise ProtocolError(msg)

    kind = envelope.get("kind")
    cls = MESSAGE_TYPES.get(kind)  # type: ignore[arg-type]
    if cls is None:
        msg = f"unknown control message kind: {kind!r}"
        raise ProtocolError(msg)

    try:
        message = cls._from_payload(
            str(envelope["run_id"]),
            str(envelope["task_id"]),
            float(envelope.get("sent_at", time.time())),
            dict(envelope.get("payload") or {}),
        )
    except (KeyError, TypeError, ValueError) as exc:
        msg = f"malformed {kind} message: {exc}"
        raise ProtocolError(msg) from exc
    return message  # type: ignore[return-value]
