"""Abstract publish/subscribe transport for control-plane messages."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from loadfleet.transport.protocol import ControlMessage


class Subscription:
    """Stream of messages delivered on one topic.

    Transports push decoded messages with :meth:`deliver`; consumers read
    them with :meth:`get` or ``async for``. Delivery is at-least-once, so
    consumers must tolerate duplicates.

    Attributes:
        topic: Topic this subscription is bound to.
    """

    def __init__(self, topic: str) -> None:
        """Initialize an open, empty subscription.

        Args:
            topic: Topic name.
        """
        self.topic = topic
        self._queue: asyncio.Queue[ControlMessage | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        """Return True once :meth:`close` has been called."""
        return self._closed

    def deliver(self, message: ControlMessage) -> None:
        """Enqueue a message for the consumer; ignored once closed."""
        if not self._closed:
            self._queue.put_nowait(message)

    async def get(self, timeout: float | None = None) -> ControlMessage | None:
        """Wait for the next message.

        Args:
            timeout: Seconds to wait; None waits forever.

        Returns:
            The next message, or None if the subscription was closed.

        Raises:
            TimeoutError: If no message arrives within *timeout*.
        """
        if self._closed and self._queue.empty():
            return None
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def close(self) -> None:
        """Stop delivery and wake any pending consumer."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[ControlMessage]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ControlMessage]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message


class Transport(ABC):
    """Topic-addressed pub/sub channel shared by one run's participants.

    Implementations raise :class:`~loadfleet._internal.errors.TransportError`
    when a publish or subscribe cannot be completed.
    """

    @abstractmethod
    async def publish(self, topic: str, message: ControlMessage) -> None:
        """Send *message* to every current subscriber of *topic*."""

    @abstractmethod
    async def subscribe(self, topic: str) -> Subscription:
        """Open a subscription that receives every later message on *topic*."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections and close all open subscriptions."""

    async def __aenter__(self) -> Transport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
