"""
Broadcast hub fanning event records out to WebSocket subscribers.

Each record is serialized once and sent to every open subscriber
concurrently, bounded by a per-send timeout. Subscribers that are no longer
open, or whose send fails or times out, are pruned after the sweep; pruned
handles that are still open are closed so the client can reconnect. There is
no retry and no per-subscriber queue.

Subscriber handles expose:
    is_open: bool
    async send(message: str) -> None
    async close(code: int, reason: str) -> None

Usage:
    hub = SubscriberHub(status_provider=registry.get_stats)
    await hub.add_subscriber(handle)
    delivered = await hub.broadcast(record)
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.constants import CLOSE_NORMAL, CLOSE_POLICY_VIOLATION, MSG_REGISTRY_STATUS
from shared.serialization_utils import to_json
from shared.types import EventRecord, StreamerSettings


class DeliveryError(Exception):
    """Raised by subscriber adapters when a message cannot be delivered."""

    pass


class SubscriberHandle(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send(self, message: str) -> None: ...

    async def close(self, code: int, reason: str) -> None: ...


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SubscriberHub:
    """Live subscriber set with best-effort concurrent delivery."""

    def __init__(
        self,
        status_provider: Callable[[], dict[str, Any]] | None = None,
        settings: StreamerSettings | None = None,
    ) -> None:
        self._status_provider = status_provider
        self._settings = settings or get_config().get_streamer_settings()
        self._subscribers: set[SubscriberHandle] = set()

        self._total_connections = 0
        self._messages_sent = 0
        self._delivery_errors = 0
        self._last_connection_time: float | None = None

        self._logger = setup_module_logger(
            "broadcast_hub", "broadcast_hub.log", module_folder="Subscriber_Logs"
        )

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def add_subscriber(self, handle: SubscriberHandle) -> None:
        """Register a subscriber and send it the registry status welcome message."""
        self._subscribers.add(handle)
        self._total_connections += 1
        self._last_connection_time = time.time()
        self._logger.info("Subscriber connected (active=%d)", len(self._subscribers))

        welcome = {
            "type": MSG_REGISTRY_STATUS,
            "data": self._status_provider() if self._status_provider else {},
            "timestamp": _utc_now(),
        }
        try:
            await asyncio.wait_for(
                handle.send(to_json(welcome)), self._settings.subscriber_send_timeout_seconds
            )
            self._messages_sent += 1
        except Exception as exc:
            self._delivery_errors += 1
            self._logger.warning("Welcome message failed, dropping subscriber: %s", exc)
            self.remove_subscriber(handle)
            await self._close_pruned([handle])

    def remove_subscriber(self, handle: SubscriberHandle) -> None:
        if handle in self._subscribers:
            self._subscribers.discard(handle)
            self._logger.info("Subscriber removed (active=%d)", len(self._subscribers))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def broadcast(self, record: EventRecord) -> int:
        """Send a record to every open subscriber. Returns the number of successful sends."""
        return await self._send_all(to_json(record))

    async def broadcast_notice(self, kind: str, address: str) -> int:
        """Notify subscribers that an ABI was added/updated or removed."""
        notice = {"type": kind, "address": address, "timestamp": _utc_now()}
        return await self._send_all(to_json(notice))

    async def _send_all(self, message: str) -> int:
        if not self._subscribers:
            return 0

        timeout = self._settings.subscriber_send_timeout_seconds
        dead: list[SubscriberHandle] = []
        targets: list[SubscriberHandle] = []
        for handle in list(self._subscribers):
            if handle.is_open:
                targets.append(handle)
            else:
                dead.append(handle)

        results = await asyncio.gather(
            *(asyncio.wait_for(handle.send(message), timeout) for handle in targets),
            return_exceptions=True,
        )

        delivered = 0
        for handle, result in zip(targets, results):
            if isinstance(result, BaseException):
                self._delivery_errors += 1
                self._logger.warning(
                    "Delivery failed, pruning subscriber: %s", str(result) or type(result).__name__
                )
                dead.append(handle)
            else:
                delivered += 1

        for handle in dead:
            self.remove_subscriber(handle)
        await self._close_pruned(dead)

        self._messages_sent += delivered
        return delivered

    async def _close_pruned(self, handles: list[SubscriberHandle]) -> None:
        """Best-effort close of pruned handles still open so the client can reconnect."""
        still_open = [h for h in handles if h.is_open]
        if not still_open:
            return
        results = await asyncio.gather(
            *(
                asyncio.wait_for(
                    h.close(CLOSE_POLICY_VIOLATION, "Delivery failed"),
                    self._settings.subscriber_send_timeout_seconds,
                )
                for h in still_open
            ),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                self._logger.warning(
                    "Error closing pruned subscriber: %s", str(result) or type(result).__name__
                )

    async def close_all(self, reason: str = "Server shutting down") -> None:
        """Close every subscriber with a normal close code and clear the live set."""
        handles = list(self._subscribers)
        self._subscribers.clear()
        for handle in handles:
            try:
                await handle.close(CLOSE_NORMAL, reason)
            except Exception as exc:
                self._logger.warning("Error closing subscriber: %s", exc)
        self._logger.info("Closed %d subscriber(s): %s", len(handles), reason)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def active_connections(self) -> int:
        return len(self._subscribers)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": self._total_connections,
            "active_connections": len(self._subscribers),
            "messages_sent": self._messages_sent,
            "delivery_errors": self._delivery_errors,
            "last_connection_time": self._last_connection_time,
        }
