"""Pub/sub hub server built on aiohttp.

The hub is the network rendezvous for a fleet: every participant opens a
WebSocket on its run's control topic and publishes by POSTing the encoded
message. The hub validates and fans each message out to every socket
subscribed to the topic. It keeps no history; a message published before a
participant subscribes is not replayed.

Routes:
    GET  /ws/{topic}       WebSocket subscription.
    POST /publish/{topic}  Publish one encoded control message.
    GET  /health           Liveness and subscriber counts.
"""

from __future__ import annotations

from collections import defaultdict

from aiohttp import WSMsgType, web

from loadfleet._internal.errors import ProtocolError
from loadfleet._internal.logging import get_logger
from loadfleet.transport.protocol import decode_message

logger = get_logger("transport.hub")


class Hub:
    """Topic registry of open WebSocket subscribers."""

    def __init__(self) -> None:
        self._sockets: dict[str, set[web.WebSocketResponse]] = defaultdict(set)

    def subscriber_count(self, topic: str) -> int:
        """Return the number of open sockets on *topic*."""
        return len(self._sockets.get(topic, ()))

    async def broadcast(self, topic: str, text: str) -> int:
        """Send *text* to every open socket on *topic*.

        Returns:
            Number of sockets the message was written to.
        """
        delivered = 0
        for ws in list(self._sockets.get(topic, ())):
            if ws.closed:
                self._sockets[topic].discard(ws)
                continue
            try:
                await ws.send_str(text)
            except ConnectionResetError:
                logger.debug("Dropping closed subscriber on %s", topic)
                self._sockets[topic].discard(ws)
                continue
            delivered += 1
        return delivered

    async def handle_subscribe(self, request: web.Request) -> web.WebSocketResponse:
        topic = request.match_info["topic"]
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._sockets[topic].add(ws)
        logger.info(
            "Subscriber joined %s (%d open)", topic, self.subscriber_count(topic)
        )
        try:
            # Text frames from a subscriber are treated as publishes
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        await self._publish_text(topic, msg.data)
                    except ProtocolError as exc:
                        logger.warning("Rejected frame on %s: %s", topic, exc)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "Subscriber on %s errored: %s", topic, ws.exception()
                    )
        finally:
            self._sockets[topic].discard(ws)
            if not self._sockets[topic]:
                del self._sockets[topic]
            logger.info("Subscriber left %s", topic)
        return ws

    async def handle_publish(self, request: web.Request) -> web.Response:
        topic = request.match_info["topic"]
        text = await request.text()
        try:
            delivered = await self._publish_text(topic, text)
        except ProtocolError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response({"topic": topic, "delivered": delivered})

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "topics": {t: len(s) for t, s in self._sockets.items()},
            }
        )

    async def _publish_text(self, topic: str, text: str) -> int:
        message = decode_message(text)
        delivered = await self.broadcast(topic, text)
        logger.debug(
            "%s %s -> %s (%d delivered)",
            message.task_id,
            message.kind,
            topic,
            delivered,
        )
        return delivered

    async def close_all(self, app: web.Application) -> None:
        """Close every subscriber socket; registered as an on_shutdown hook."""
        for sockets in list(self._sockets.values()):
            for ws in list(sockets):
                await ws.close(message=b"hub shutting down")
        self._sockets.clear()


def create_hub_app(hub: Hub | None = None) -> web.Application:
    """Build the aiohttp application serving the hub routes.

    Args:
        hub: Hub instance to serve; a fresh one is created if omitted.

    Returns:
        The configured application.
    """
    hub = hub or Hub()
    app = web.Application()
    app.router.add_get("/ws/{topic:.+}", hub.handle_subscribe)
    app.router.add_post("/publish/{topic:.+}", hub.handle_publish)
    app.router.add_get("/health", hub.handle_health)
    app.on_shutdown.append(hub.close_all)
    return app
