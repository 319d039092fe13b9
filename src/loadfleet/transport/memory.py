"""In-process transport backed by asyncio queues."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from loadfleet._internal.errors import TransportError
from loadfleet._internal.logging import get_logger
from loadfleet.transport.base import Subscription, Transport

if TYPE_CHECKING:
    from loadfleet.transport.protocol import ControlMessage

logger = get_logger("transport.memory")


class InMemoryTransport(Transport):
    """Fan-out broker for participants running in one event loop.

    Used by the local fleet launcher and by tests. Every published message
    is also appended to a per-topic history so callers can inspect what was
    sent.

    Attributes:
        duplicate_delivery: Deliver every message twice, to exercise
            at-least-once handling.
    """

    def __init__(self, *, duplicate_delivery: bool = False) -> None:
        """Initialize an empty broker.

        Args:
            duplicate_delivery: If True, each message is delivered twice.
        """
        self.duplicate_delivery = duplicate_delivery
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._history: dict[str, list[ControlMessage]] = defaultdict(list)
        self._closed = False

    def history(self, topic: str) -> list[ControlMessage]:
        """Return every message published on *topic*, in publish order."""
        return list(self._history[topic])

    async def publish(self, topic: str, message: ControlMessage) -> None:
        """Deliver *message* to all open subscriptions on *topic*.

        Raises:
            TransportError: If the transport has been closed.
        """
        if self._closed:
            msg = "transport is closed"
            raise TransportError(msg)
        self._history[topic].append(message)
        copies = 2 if self.duplicate_delivery else 1
        live = [s for s in self._subscriptions[topic] if not s.closed]
        self._subscriptions[topic] = live
        for subscription in live:
            for _ in range(copies):
                subscription.deliver(message)
        logger.debug(
            "%s -> %s (%s, %d subscribers)",
            message.task_id,
            topic,
            message.kind,
            len(live),
        )

    async def subscribe(self, topic: str) -> Subscription:
        """Open a subscription on *topic*.

        Raises:
            TransportError: If the transport has been closed.
        """
        if self._closed:
            msg = "transport is closed"
            raise TransportError(msg)
        subscription = Subscription(topic)
        self._subscriptions[topic].append(subscription)
        return subscription

    async def close(self) -> None:
        """Close every subscription; later publishes raise TransportError."""
        self._closed = True
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                subscription.close()
        self._subscriptions.clear()
