"""
WebSocket server exposing the broadcast hub to downstream subscribers.

Every accepted connection is wrapped in a WebSocketSubscriber, registered
with the hub for the lifetime of the connection and removed when it closes.
Subscribers only receive; inbound messages are ignored.

Usage:
    server = await serve_subscribers(hub, "0.0.0.0", 3000)
    ...
    server.close()
    await server.wait_closed()
"""

from __future__ import annotations

from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from bot_logging.logger_manager import setup_module_logger
from core.broadcast_hub import DeliveryError, SubscriberHub

_logger = setup_module_logger("subscriber_server", "subscriber_server.log", module_folder="Subscriber_Logs")


class WebSocketSubscriber:
    """Subscriber handle over a websockets server connection."""

    def __init__(self, ws: Any) -> None:
        self._ws = ws

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    @property
    def remote_address(self) -> Any:
        return getattr(self._ws, "remote_address", None)

    async def send(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except ConnectionClosed as exc:
            raise DeliveryError(f"Subscriber {self.remote_address} closed: {exc}") from exc

    async def close(self, code: int, reason: str) -> None:
        await self._ws.close(code=code, reason=reason)


async def serve_subscribers(hub: SubscriberHub, host: str, port: int) -> Any:
    """Start the subscriber WebSocket server. Returns the websockets Server."""

    async def handler(ws: Any) -> None:
        subscriber = WebSocketSubscriber(ws)
        _logger.info("Subscriber connected from %s", subscriber.remote_address)
        await hub.add_subscriber(subscriber)
        try:
            await ws.wait_closed()
        finally:
            hub.remove_subscriber(subscriber)
            _logger.info("Subscriber disconnected from %s", subscriber.remote_address)

    server = await websockets.serve(handler, host, port)
    _logger.info("Subscriber server listening on %s:%d", host, port)
    return server
