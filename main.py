"""
Block Event Relay: Main Entrypoint.

Single-process asyncio runner that wires the relay together:
    1. ConnectionManager: node WebSocket, newHeads subscription, reconnects
    2. EventPipeline    : per-block log batching, decoding, fan-out
    3. SubscriberHub    : WebSocket server pushing records to subscribers
    4. EventSink        : buffered NDJSON audit log

Runs until SIGINT/SIGTERM or until the connection manager exhausts its
reconnect attempts, in which case the process exits with status 1.
SIGHUP re-reads the ABI directory and notifies subscribers of changes.

Usage:
    NODE_WS_URL=wss://... python main.py
"""

from __future__ import annotations

import asyncio
import signal
import sys
from functools import partial
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from bot_logging.logger_manager import create_module_log_directories, setup_module_logger
from config.loader import get_config
from config.validate import ConfigValidationError, validate_all_configs
from shared.constants import MSG_ABI_REMOVED, MSG_ABI_UPDATED
from shared.types import ConnectionState

# ---------------------------------------------------------------------------
# Module logger
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(ws_url: str, subscriber_cfg: dict, events_log: str, abi_count: int) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Block event relay starting")
    _logger.info("=" * 60)
    _logger.info("  node            : %s...%s", ws_url[:25], ws_url[-6:] if len(ws_url) > 31 else "")
    _logger.info("  subscribers     : ws://%s:%d", subscriber_cfg["host"], subscriber_cfg["port"])
    _logger.info("  events_log      : %s", events_log)
    _logger.info("  abis_loaded     : %d", abi_count)
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# ABI reload and shutdown
# ---------------------------------------------------------------------------


async def reload_abis(registry: Any, hub: Any, abi_dir: Path) -> None:
    """Re-sync the ABI directory and notify subscribers of each change."""
    try:
        updated, removed = registry.sync_directory(abi_dir)
        for address in updated:
            await hub.broadcast_notice(MSG_ABI_UPDATED, address)
        for address in removed:
            await hub.broadcast_notice(MSG_ABI_REMOVED, address)
    except Exception as exc:
        _logger.error("ABI reload failed: %s", exc, exc_info=True)


async def shutdown_relay(server: Any, manager: Any, hub: Any, sink: Any) -> None:
    """
    Stop the relay in dependency order.

    The connection manager goes first so a block in flight still reaches
    subscribers and the sink. Subscribers are closed by the hub before the
    server stops accepting, and the sink's final flush runs last.
    """
    await manager.shutdown()
    await hub.close_all("Server shutting down")
    server.close()
    await server.wait_closed()
    await sink.shutdown()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> int:
    """Wire all components and run until shutdown. Returns the exit status."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        return 1

    create_module_log_directories()
    cfg = get_config()
    settings = cfg.get_streamer_settings()
    ws_url = cfg.get_node_ws_url()
    subscriber_cfg = cfg.get_subscriber_server_config()
    abi_dir = cfg.get_abi_dir()
    events_log = cfg.get_events_log_path()

    # ------------------------------------------------------------------
    # 2. Initialize components (dependency order)
    # ------------------------------------------------------------------
    from core.broadcast_hub import SubscriberHub
    from core.connection_manager import ConnectionManager
    from core.decoder import decode_log
    from core.event_pipeline import EventPipeline
    from core.event_sink import EventSink
    from core.interface_registry import InterfaceRegistry
    from data.file_target import JsonlFileTarget
    from data.node_client import NodeWebSocketClient
    from data.subscriber_server import serve_subscribers

    registry = InterfaceRegistry()
    abi_count = registry.load_directory(abi_dir)

    _log_banner(ws_url, subscriber_cfg, str(events_log), abi_count)

    hub = SubscriberHub(status_provider=registry.get_stats, settings=settings)
    sink = EventSink(JsonlFileTarget(events_log), settings=settings)
    pipeline = EventPipeline(
        hub, sink, decoder=partial(decode_log, lookup=registry.lookup), settings=settings
    )
    ws_options = cfg.get_websocket_options()
    manager = ConnectionManager(
        lambda: NodeWebSocketClient(
            ws_url, options=ws_options, request_timeout=settings.request_timeout_seconds
        ),
        pipeline,
        settings=settings,
    )

    server = await serve_subscribers(hub, subscriber_cfg["host"], subscriber_cfg["port"])
    sink_task = asyncio.create_task(sink.run(), name="event_sink")

    # ------------------------------------------------------------------
    # 3. Signal handling
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    reload_tasks: set[asyncio.Task] = set()

    def _handle_reload() -> None:
        _logger.info("Received SIGHUP, reloading ABI directory %s", abi_dir)
        task = asyncio.create_task(reload_abis(registry, hub, abi_dir), name="abi_reload")
        reload_tasks.add(task)
        task.add_done_callback(reload_tasks.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)
    loop.add_signal_handler(signal.SIGHUP, _handle_reload)

    # ------------------------------------------------------------------
    # 4. Connect and wait for a signal or terminal failure
    # ------------------------------------------------------------------
    await manager.connect()

    stop_wait = asyncio.create_task(shutdown_event.wait())
    failed_wait = asyncio.create_task(manager.failed.wait())
    try:
        await asyncio.wait({stop_wait, failed_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for t in (stop_wait, failed_wait):
            t.cancel()

        _logger.info("Shutting down")
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
            loop.remove_signal_handler(sig)
        if reload_tasks:
            await asyncio.gather(*reload_tasks, return_exceptions=True)

        await shutdown_relay(server, manager, hub, sink)
        if not sink_task.done():
            sink_task.cancel()
        await asyncio.gather(sink_task, return_exceptions=True)

        _logger.info("Final connection stats: %s", manager.get_stats())
        _logger.info("Final pipeline stats: %s", pipeline.get_stats())
        _logger.info("Final subscriber stats: %s", hub.get_stats())
        _logger.info("Final sink stats: %s", sink.get_stats())
        _logger.info("Shutdown complete")

    if manager.state is ConnectionState.FAILED:
        _logger.critical("Reconnect attempts exhausted; restart required")
        return 1
    return 0


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        status = asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")
        status = 0
    sys.exit(status)


if __name__ == "__main__":
    main()
