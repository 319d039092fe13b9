"""Network transport client talking to a :mod:`loadfleet.transport.hub`."""

from __future__ import annotations

import asyncio
import contextlib

import aiohttp

from loadfleet._internal.errors import ProtocolError, TransportError
from loadfleet._internal.logging import get_logger
from loadfleet.transport.base import Subscription, Transport
from loadfleet.transport.protocol import ControlMessage, decode_message, encode_message

logger = get_logger("transport.websocket")


class WebSocketTransport(Transport):
    """Publishes over HTTP and subscribes over WebSocket to a hub.

    Every aiohttp or timeout error is surfaced as ``TransportError``; retry
    policy is left to the caller.

    Attributes:
        hub_url: Base URL of the hub, e.g. ``http://hub:8089``.
    """

    def __init__(self, hub_url: str, *, timeout: float = 10.0) -> None:
        """Initialize the transport; no connection is made until first use.

        Args:
            hub_url: Base URL of the hub.
            timeout: Per-request timeout in seconds.
        """
        self.hub_url = hub_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._readers: list[asyncio.Task[None]] = []
        self._sockets: list[aiohttp.ClientWebSocketResponse] = []
        self._subscriptions: list[Subscription] = []

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def publish(self, topic: str, message: ControlMessage) -> None:
        """POST the encoded message to the hub.

        Raises:
            TransportError: If the hub is unreachable or rejects the message.
        """
        url = f"{self.hub_url}/publish/{topic}"
        try:
            async with self._get_session().post(
                url,
                data=encode_message(message),
                headers={"Content-Type": "application/json"},
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    msg = f"hub rejected {message.kind} ({resp.status}): {body}"
                    raise TransportError(msg)
        except (aiohttp.ClientError, TimeoutError) as exc:
            msg = f"publish to {url} failed: {exc}"
            raise TransportError(msg) from exc

    async def subscribe(self, topic: str) -> Subscription:
        """Open a WebSocket on *topic* and start a background reader.

        Raises:
            TransportError: If the WebSocket cannot be opened.
        """
        url = f"{self.hub_url}/ws/{topic}"
        try:
            ws = await self._get_session().ws_connect(url, heartbeat=30.0)
        except (aiohttp.ClientError, TimeoutError) as exc:
            msg = f"subscribe to {url} failed: {exc}"
            raise TransportError(msg) from exc

        subscription = Subscription(topic)
        self._sockets.append(ws)
        self._subscriptions.append(subscription)
        self._readers.append(
            asyncio.create_task(
                self._read_loop(ws, subscription), name=f"ws-reader-{topic}"
            )
        )
        return subscription

    async def _read_loop(
        self, ws: aiohttp.ClientWebSocketResponse, subscription: Subscription
    ) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        subscription.deliver(decode_message(msg.data))
                    except ProtocolError as exc:
                        logger.warning(
                            "Dropping bad message on %s: %s", subscription.topic, exc
                        )
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(
                        "WebSocket on %s errored: %s",
                        subscription.topic,
                        ws.exception(),
                    )
                    break
        finally:
            if not subscription.closed:
                logger.warning("Subscription to %s closed by hub", subscription.topic)
            subscription.close()

    async def close(self) -> None:
        """Close every socket, stop readers and release the HTTP session."""
        for subscription in self._subscriptions:
            subscription.close()
        for ws in self._sockets:
            await ws.close()
        for reader in self._readers:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        self._readers.clear()
        self._sockets.clear()
        self._subscriptions.clear()
        if self._session is not None:
            await self._session.close()
            self._session = None
