"""
Event pipeline: batch, decode, broadcast and persist the logs of one block.

Logs are chunked into fixed-size batches that are processed sequentially.
Within a batch each log is decoded, broadcast to subscribers and appended to
the sink, strictly in order. A failure at any step for one log is counted and
logged; the remaining logs are still processed.

Usage:
    pipeline = EventPipeline(hub, sink, decoder=partial(decode_log, lookup=registry.lookup))
    produced = await pipeline.process(logs)
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Callable, Sequence, TypeVar

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.types import EventRecord, RawLog, StreamerSettings

if TYPE_CHECKING:
    from core.broadcast_hub import SubscriberHub
    from core.event_sink import EventSink

T = TypeVar("T")


def create_batches(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """Split into ordered chunks of batch_size; the last chunk may be shorter."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [list(items[i : i + batch_size]) for i in range(0, len(items), batch_size)]


class EventPipeline:
    """Sequential decode -> broadcast -> persist for batches of raw logs."""

    def __init__(
        self,
        hub: SubscriberHub,
        sink: EventSink,
        decoder: Callable[[RawLog], EventRecord],
        settings: StreamerSettings | None = None,
    ) -> None:
        self._hub = hub
        self._sink = sink
        self._decoder = decoder
        self._settings = settings or get_config().get_streamer_settings()

        self._events_processed = 0
        self._events_decoded = 0
        self._errors = 0
        self._batches_processed = 0
        self._last_event_time: float | None = None

        self._logger = setup_module_logger(
            "event_pipeline", "event_pipeline.log", module_folder="Pipeline_Logs"
        )

    async def process(self, logs: Sequence[RawLog]) -> int:
        """Run every log through the pipeline. Returns the number of records produced."""
        produced = 0
        for batch in create_batches(logs, self._settings.batch_size):
            for raw_log in batch:
                try:
                    record = self._decoder(raw_log)
                except Exception as exc:
                    self._errors += 1
                    self._logger.error(
                        "Failed to build record for block=%d log_index=%d: %s",
                        raw_log.block_number,
                        raw_log.log_index,
                        exc,
                    )
                    continue

                produced += 1
                self._events_processed += 1
                self._last_event_time = time.time()
                if record.decoded is not None:
                    self._events_decoded += 1

                try:
                    await self._hub.broadcast(record)
                except Exception as exc:
                    self._errors += 1
                    self._logger.error(
                        "Broadcast failed for block=%d log_index=%d: %s",
                        record.block_number,
                        record.log_index,
                        exc,
                    )

                try:
                    await self._sink.append(record)
                except Exception as exc:
                    self._errors += 1
                    self._logger.error(
                        "Sink append failed for block=%d log_index=%d: %s",
                        record.block_number,
                        record.log_index,
                        exc,
                    )

            self._batches_processed += 1

        return produced

    def get_stats(self) -> dict[str, Any]:
        return {
            "events_processed": self._events_processed,
            "events_decoded": self._events_decoded,
            "errors": self._errors,
            "batches_processed": self._batches_processed,
            "last_event_time": self._last_event_time,
        }
