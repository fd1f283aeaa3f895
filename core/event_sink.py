"""
Buffered newline-delimited JSON sink for event records.

Records are buffered in arrival order and written to a persistent target
when the buffer reaches the flush threshold, on the periodic flush loop, and
once more on shutdown. A failed write keeps the records for the next flush;
only the slice actually written is removed from the buffer.

Targets expose:
    async append(payload: bytes) -> None
    async close() -> None

Usage:
    sink = EventSink(JsonlFileTarget(path))
    asyncio.create_task(sink.run())
    await sink.append(record)
    await sink.shutdown()
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.serialization_utils import to_json
from shared.types import EventRecord, StreamerSettings


class SinkError(Exception):
    """Raised by persistent targets when a write cannot be completed."""

    pass


class PersistentTarget(Protocol):
    async def append(self, payload: bytes) -> None: ...

    async def close(self) -> None: ...


class EventSink:
    """Ordered in-memory buffer in front of an append-only target."""

    def __init__(self, target: PersistentTarget, settings: StreamerSettings | None = None) -> None:
        self._target = target
        self._settings = settings or get_config().get_streamer_settings()
        self._buffer: list[EventRecord] = []

        self._flushing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._running = False
        self._closed = False
        self._run_task: asyncio.Task | None = None

        self._records_appended = 0
        self._records_flushed = 0
        self._flushes = 0
        self._flush_errors = 0

        self._logger = setup_module_logger("event_sink", "event_sink.log", module_folder="Sink_Logs")

    # ------------------------------------------------------------------
    # Buffering
    # ------------------------------------------------------------------

    async def append(self, record: EventRecord) -> None:
        """Buffer a record; flush once the threshold is reached."""
        self._buffer.append(record)
        self._records_appended += 1
        if len(self._buffer) >= self._settings.sink_flush_threshold:
            await self.flush()

    async def flush(self) -> int:
        """
        Write the buffered records to the target.

        Returns the number of records written (0 when the buffer is empty,
        another flush is in progress, or the write failed).
        """
        if self._flushing or not self._buffer:
            return 0

        count = len(self._buffer)
        payload = "".join(to_json(r) + "\n" for r in self._buffer[:count]).encode("utf-8")
        self._flushing = True
        self._idle.clear()
        # A cancelled caller must not stop the buffer being trimmed after a completed write
        return await asyncio.shield(self._write(count, payload))

    async def _write(self, count: int, payload: bytes) -> int:
        try:
            try:
                await self._target.append(payload)
            except Exception as exc:
                self._flush_errors += 1
                self._logger.error(
                    "Flush of %d record(s) failed, retaining for retry (buffer=%d): %s",
                    count,
                    len(self._buffer),
                    exc,
                )
                return 0

            # Records appended while the write was in flight stay buffered
            del self._buffer[:count]
            self._records_flushed += count
            self._flushes += 1
            self._logger.debug("Flushed %d record(s)", count)
            return count
        finally:
            self._flushing = False
            self._idle.set()

    # ------------------------------------------------------------------
    # Periodic flush loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Periodic flush loop, designed to be launched as an asyncio.Task."""
        interval = self._settings.sink_flush_interval_seconds
        if interval <= 0:
            return

        self._running = True
        self._run_task = asyncio.current_task()
        self._logger.info("Sink flush loop started (interval=%.1fs)", interval)
        try:
            while self._running:
                await asyncio.sleep(interval)
                try:
                    await self.flush()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._logger.error("Periodic flush error: %s", exc)
        except asyncio.CancelledError:
            self._logger.info("Sink flush loop cancelled")
        finally:
            self._running = False

    def stop(self) -> None:
        """Signal the run loop to stop."""
        self._running = False
        task = self._run_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def shutdown(self) -> None:
        """Stop the flush loop, flush everything buffered, and close the target."""
        if self._closed:
            return
        self._closed = True

        self.stop()
        if self._run_task is not None and self._run_task is not asyncio.current_task():
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        self._run_task = None

        # Let a write already in flight finish before the final flush
        await self._idle.wait()
        written = await self.flush()
        if self._buffer:
            self._logger.error(
                "Shutdown with %d unflushed record(s) after final flush", len(self._buffer)
            )
        else:
            self._logger.info("Final flush wrote %d record(s)", written)

        try:
            await self._target.close()
        except Exception as exc:
            self._logger.error("Error closing sink target: %s", exc)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "records_appended": self._records_appended,
            "records_flushed": self._records_flushed,
            "flushes": self._flushes,
            "flush_errors": self._flush_errors,
            "buffer_size": len(self._buffer),
            "buffer_capacity": self._settings.sink_flush_threshold,
        }
