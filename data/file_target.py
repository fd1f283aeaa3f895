"""
Append-only file target for the event sink.

Each append is written, flushed and fsynced in a worker thread so the event
loop never blocks on disk I/O.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

from core.event_sink import SinkError


class JsonlFileTarget:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    async def append(self, payload: bytes) -> None:
        if self._closed:
            raise SinkError(f"Target closed: {self._path}")
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as exc:
            raise SinkError(f"Write to {self._path} failed: {exc}") from exc

    def _write(self, payload: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "ab") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())

    async def close(self) -> None:
        self._closed = True
