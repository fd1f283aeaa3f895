"""
JSON-RPC over WebSocket client for an EVM node.

Opens one WebSocket to the node, subscribes to newHeads and serves
eth_getLogs requests on the same socket. A reader task correlates responses
to requests by id and dispatches eth_subscription notifications to the
on_block listener. An unsolicited close is reported once through on_close
with the WebSocket close code.

Usage:
    client = NodeWebSocketClient(ws_url, options=config.get_websocket_options())
    client.set_listeners(on_block, on_close, on_error)
    await client.open()
    await client.subscribe_new_heads()
    logs = await client.get_logs(block, block)
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from bot_logging.logger_manager import setup_module_logger
from shared.constants import (
    CLOSE_ABNORMAL,
    CLOSE_NORMAL,
    JSONRPC_VERSION,
    METHOD_GET_LOGS,
    METHOD_SUBSCRIBE,
    METHOD_SUBSCRIPTION,
    SUBSCRIPTION_NEW_HEADS,
)
from shared.types import RawLog, parse_quantity


class TransportError(Exception):
    """Connection-level failure talking to the node."""

    pass


class FetchError(Exception):
    """The node answered eth_getLogs with an error or an unusable result."""

    pass


BlockListener = Callable[[int], None]
CloseListener = Callable[[int], None]
ErrorListener = Callable[[Exception], None]


class NodeWebSocketClient:
    """Single-socket JSON-RPC client; one instance per connection attempt."""

    def __init__(
        self,
        url: str,
        options: dict[str, Any] | None = None,
        request_timeout: float = 30.0,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._options = options or {}
        self._request_timeout = request_timeout
        self._connect = connect

        self._ws: Any = None
        self._reader_task: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._subscription_id: str | None = None
        self._closing = False

        self._on_block: BlockListener | None = None
        self._on_close: CloseListener | None = None
        self._on_error: ErrorListener | None = None

        self._logger = setup_module_logger(
            "node_client", "node_client.log", module_folder="Connection_Logs"
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def set_listeners(
        self,
        on_block: BlockListener | None = None,
        on_close: CloseListener | None = None,
        on_error: ErrorListener | None = None,
    ) -> None:
        self._on_block = on_block
        self._on_close = on_close
        self._on_error = on_error

    def remove_all_listeners(self) -> None:
        self._on_block = None
        self._on_close = None
        self._on_error = None

    @property
    def is_open(self) -> bool:
        return (
            self._ws is not None
            and not self._closing
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the WebSocket and start the reader task."""
        try:
            self._ws = await self._connect(
                self._url,
                ping_interval=self._options.get("ping_interval_seconds", 20),
                ping_timeout=self._options.get("ping_timeout_seconds", 30),
                close_timeout=self._options.get("close_timeout_seconds", 10),
                max_size=self._options.get("max_message_bytes", 10 * 1024 * 1024),
            )
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Cannot connect to node: {exc}") from exc

        self._reader_task = asyncio.create_task(self._read_loop())
        self._logger.info("WebSocket open")

    async def close(self) -> None:
        """Close the socket. Does not fire on_close."""
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=CLOSE_NORMAL)
            except Exception as exc:
                self._logger.warning("Error closing WebSocket: %s", exc)

        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fail_pending(TransportError("Client closed"))

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    async def subscribe_new_heads(self) -> str:
        response = await self._call(METHOD_SUBSCRIBE, [SUBSCRIPTION_NEW_HEADS])
        if "error" in response:
            raise TransportError(f"newHeads subscription rejected: {response['error']}")
        self._subscription_id = response.get("result")
        self._logger.info("Subscribed to newHeads (id=%s)", self._subscription_id)
        return self._subscription_id

    async def get_logs(self, from_block: int, to_block: int) -> list[RawLog]:
        """All logs emitted in [from_block, to_block], in node order."""
        response = await self._call(
            METHOD_GET_LOGS, [{"fromBlock": hex(from_block), "toBlock": hex(to_block)}]
        )
        if "error" in response:
            raise FetchError(
                f"{METHOD_GET_LOGS} [{from_block}, {to_block}] failed: {response['error']}"
            )
        result = response.get("result")
        if not isinstance(result, list):
            raise FetchError(f"{METHOD_GET_LOGS} returned {type(result).__name__}, expected list")
        return [RawLog.from_rpc(entry) for entry in result]

    async def _call(self, method: str, params: list[Any]) -> dict[str, Any]:
        if not self.is_open:
            raise TransportError(f"Cannot call {method}: connection not open")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params}
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(future, self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"{method} timed out after {self._request_timeout}s") from exc
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(f"{method} failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        ws = self._ws
        code = CLOSE_ABNORMAL
        try:
            while True:
                raw = await ws.recv()
                self._dispatch(raw)
        except ConnectionClosed as exc:
            code = exc.rcvd.code if exc.rcvd is not None else CLOSE_ABNORMAL
            self._logger.warning("WebSocket closed by peer (code=%d)", code)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("Reader error: %s", exc)
            if self._on_error is not None:
                self._on_error(exc)
        finally:
            self._fail_pending(TransportError("Connection closed"))

        if not self._closing and self._on_close is not None:
            self._on_close(code)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            self._logger.warning("Invalid JSON from node: %s", exc)
            return
        if not isinstance(message, dict):
            return

        request_id = message.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is not None and not future.done():
                future.set_result(message)
            return

        if message.get("method") != METHOD_SUBSCRIPTION:
            return
        params = message.get("params") or {}
        if self._subscription_id is not None and params.get("subscription") != self._subscription_id:
            return
        head = params.get("result") or {}
        if "number" not in head or self._on_block is None:
            return
        try:
            self._on_block(parse_quantity(head["number"]))
        except Exception as exc:
            self._logger.error("Block listener error: %s", exc)
            if self._on_error is not None:
                self._on_error(exc)

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
