"""
Connection manager: node connection state machine and block processing.

Owns the upstream transport. Connects with a bounded timeout, subscribes to
new block headers, and reconnects with a linear backoff
(base_delay * attempt) until max_reconnect_attempts is exhausted, at which
point it enters the terminal FAILED state and sets the `failed` event.

Each new block number is queued by the transport callback and handled by a
single worker task: blocks at or below the watermark are skipped, otherwise
the block's logs are fetched and run through the pipeline. The watermark
only advances once the pipeline has processed the block.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING   -> RECONNECTING       (timeout / error)
    CONNECTED    -> RECONNECTING       (transport closed)
    RECONNECTING -> CONNECTING         (after backoff)
    RECONNECTING -> FAILED             (attempts exhausted)

Usage:
    manager = ConnectionManager(lambda: NodeWebSocketClient(url), pipeline)
    await manager.connect()
    await manager.failed.wait()
    await manager.shutdown()
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.types import ConnectionState, RawLog, StreamerSettings

if TYPE_CHECKING:
    from core.event_pipeline import EventPipeline


class Transport(Protocol):
    def set_listeners(
        self,
        on_block: Callable[[int], None] | None = None,
        on_close: Callable[[int], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None: ...

    def remove_all_listeners(self) -> None: ...

    async def open(self) -> None: ...

    async def subscribe_new_heads(self) -> Any: ...

    async def get_logs(self, from_block: int, to_block: int) -> list[RawLog]: ...

    async def close(self) -> None: ...


class ConnectionManager:
    """Reconnecting block subscriber feeding the event pipeline."""

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        pipeline: EventPipeline,
        settings: StreamerSettings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._transport_factory = transport_factory
        self._pipeline = pipeline
        self._settings = settings or get_config().get_streamer_settings()
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._transport: Transport | None = None
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task | None = None
        self._worker_task: asyncio.Task | None = None
        self._handling = False
        self._block_queue: asyncio.Queue[int] = asyncio.Queue()
        self._closed = False
        self.failed = asyncio.Event()

        # Highest block whose logs went through the pipeline
        self._watermark = 0

        self._blocks_processed = 0
        self._blocks_skipped = 0
        self._logs_processed = 0
        self._reconnections = 0
        self._errors = 0
        self._fetch_errors = 0
        self._last_block_time: float | None = None
        self._connected_since: float | None = None

        self._logger = setup_module_logger(
            "connection_manager", "connection_manager.log", module_folder="Connection_Logs"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            self._logger.info("Connection state: %s -> %s", self._state.value, state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Start (or restart, from RECONNECTING) a connection attempt."""
        if self._closed or self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.FAILED,
        ):
            return

        # An external connect() while waiting out the backoff connects now
        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            self._reconnect_task = None

        await self._attempt_connection()

    async def _attempt_connection(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        timeout = self._settings.connection_timeout_ms / 1000
        transport = self._transport_factory()
        transport.set_listeners(
            on_block=lambda number: self._on_block(transport, number),
            on_close=lambda code: self._on_close(transport, code),
            on_error=lambda exc: self._on_error(transport, exc),
        )

        try:
            await asyncio.wait_for(transport.open(), timeout)
            await asyncio.wait_for(transport.subscribe_new_heads(), timeout)
        except asyncio.CancelledError:
            await self._discard(transport)
            raise
        except Exception as exc:
            self._errors += 1
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            self._logger.error(
                "Connection attempt %d failed: %s",
                self._reconnect_attempts + 1,
                reason or type(exc).__name__,
            )
            await self._discard(transport)
            if not self._closed:
                self._schedule_reconnect()
            return

        if self._closed:
            await self._discard(transport)
            return

        self._transport = transport
        self._reconnect_attempts = 0
        self._connected_since = time.time()
        self._set_state(ConnectionState.CONNECTED)
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._block_worker())

    def _schedule_reconnect(self) -> None:
        self._reconnect_attempts += 1
        if self._reconnect_attempts > self._settings.max_reconnect_attempts:
            self._set_state(ConnectionState.FAILED)
            self._logger.critical(
                "Giving up after %d reconnect attempt(s)", self._settings.max_reconnect_attempts
            )
            self.failed.set()
            return

        self._reconnections += 1
        delay = self._settings.reconnect_base_delay_ms * self._reconnect_attempts / 1000
        self._set_state(ConnectionState.RECONNECTING)
        self._logger.warning(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            self._settings.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._closed or self._state is not ConnectionState.RECONNECTING:
            return
        await self._attempt_connection()

    async def _discard(self, transport: Transport) -> None:
        transport.remove_all_listeners()
        try:
            await transport.close()
        except Exception as exc:
            self._logger.warning("Error closing transport: %s", exc)

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _on_block(self, transport: Transport, number: int) -> None:
        if transport is self._transport and not self._closed:
            self._block_queue.put_nowait(number)

    def _on_close(self, transport: Transport, code: int) -> None:
        if self._closed or transport is not self._transport:
            return
        self._logger.warning("Node connection closed (code=%d)", code)
        transport.remove_all_listeners()
        self._transport = None
        self._connected_since = None
        self._drain_queue()
        self._schedule_reconnect()

    def _on_error(self, transport: Transport, exc: Exception) -> None:
        if transport is self._transport:
            self._errors += 1
            self._logger.error("Transport error: %s", exc)

    def _drain_queue(self) -> None:
        while not self._block_queue.empty():
            self._block_queue.get_nowait()

    # ------------------------------------------------------------------
    # Block processing
    # ------------------------------------------------------------------

    async def _block_worker(self) -> None:
        try:
            while not self._closed:
                number = await self._block_queue.get()
                if self._state is not ConnectionState.CONNECTED:
                    continue
                self._handling = True
                try:
                    await self.handle_block(number)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._errors += 1
                    self._logger.error("Unexpected error handling block %d: %s", number, exc)
                finally:
                    self._handling = False
        except asyncio.CancelledError:
            self._logger.info("Block worker cancelled")

    async def handle_block(self, number: int) -> bool:
        """
        Fetch and process the logs of one block.

        Returns True when the block was processed and the watermark advanced.
        """
        if number <= self._watermark:
            self._blocks_skipped += 1
            self._logger.debug("Skipping block %d (watermark=%d)", number, self._watermark)
            return False

        transport = self._transport
        if transport is None:
            self._errors += 1
            self._logger.error("No transport to fetch block %d", number)
            return False

        try:
            logs = await transport.get_logs(number, number)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fetch_errors += 1
            self._errors += 1
            self._logger.error("Failed to fetch logs for block %d: %s", number, exc)
            return False

        try:
            await self._pipeline.process(logs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._errors += 1
            self._logger.error("Pipeline failed for block %d: %s", number, exc)
            return False

        self._watermark = number
        self._blocks_processed += 1
        self._logs_processed += len(logs)
        self._last_block_time = time.time()
        self._logger.info("Processed block %d (%d logs)", number, len(logs))
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """
        Cancel any pending reconnect, detach listeners, stop the worker and
        close the transport. A block already being handled is allowed to
        finish before the transport is closed.
        """
        if self._closed:
            return
        self._closed = True

        current = asyncio.current_task()
        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and reconnect is not current and not reconnect.done():
            reconnect.cancel()
            try:
                await reconnect
            except asyncio.CancelledError:
                pass

        if self._transport is not None:
            self._transport.remove_all_listeners()

        worker, self._worker_task = self._worker_task, None
        if worker is not None and worker is not current and not worker.done():
            if self._handling:
                await worker
            else:
                worker.cancel()
                try:
                    await worker
                except asyncio.CancelledError:
                    pass

        transport, self._transport = self._transport, None
        if transport is not None:
            await self._discard(transport)

        self._drain_queue()
        self._connected_since = None
        if self._state is not ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)
        self._logger.info("Connection manager shut down")

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        uptime = time.time() - self._connected_since if self._connected_since else None
        return {
            "blocks_processed": self._blocks_processed,
            "blocks_skipped": self._blocks_skipped,
            "logs_processed": self._logs_processed,
            "reconnections": self._reconnections,
            "errors": self._errors,
            "fetch_errors": self._fetch_errors,
            "last_block_time": self._last_block_time,
            "last_block_processed": self._watermark,
            "state": self._state.value,
            "reconnect_attempts": self._reconnect_attempts,
            "is_connected": self.is_connected,
            "connection_uptime": uptime,
        }
