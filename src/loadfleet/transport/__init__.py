"""Control-plane transport for LoadFleet.

All participants of a run exchange :mod:`~loadfleet.transport.protocol`
messages on the single topic ``run/{run_id}/control``. Two transports are
provided: :class:`InMemoryTransport` for a fleet running in one process,
and :class:`WebSocketTransport` for processes connected through the
aiohttp hub.
"""

from __future__ import annotations

from loadfleet.transport.base import Subscription, Transport
from loadfleet.transport.memory import InMemoryTransport
from loadfleet.transport.protocol import (
    CONTROLLER_ID,
    Cancel,
    ControlMessage,
    Failed,
    Finished,
    Heartbeat,
    Hello,
    Progress,
    Ready,
    Start,
    control_topic,
    decode_message,
    encode_message,
)
from loadfleet.transport.websocket import WebSocketTransport

__all__ = [
    "CONTROLLER_ID",
    "Cancel",
    "ControlMessage",
    "Failed",
    "Finished",
    "Heartbeat",
    "Hello",
    "InMemoryTransport",
    "Progress",
    "Ready",
    "Start",
    "Subscription",
    "Transport",
    "WebSocketTransport",
    "control_topic",
    "decode_message",
    "encode_message",
]
