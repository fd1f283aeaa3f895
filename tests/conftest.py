"""
Shared pytest configuration and fixtures for block event relay tests.

Provides sample ABIs, raw log builders and in-memory fakes for the
subscriber handle and persistent target protocols.
"""

from __future__ import annotations

import asyncio

import pytest
from eth_abi import encode

from shared.types import EventRecord, RawLog, StreamerSettings

# ---------------------------------------------------------------------------
# Sample addresses and ABIs
# ---------------------------------------------------------------------------

TOKEN_ADDRESS = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
TOKEN_ADDRESS_CHECKSUM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
SENDER = "0xd8da6bf26964af9d7eed9e03e53415d37aa96045"
RECIPIENT = "0x1234567890abcdef1234567890abcdef12345678"

TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
APPROVAL_TOPIC = "0x8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925"

ERC20_EVENTS_ABI = [
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Approval",
        "anonymous": False,
        "inputs": [
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "spender", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]


def address_topic(address: str) -> str:
    """Left-pad a 20-byte address into a 32-byte topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def abi_data(types: list[str], values: list) -> str:
    return "0x" + encode(types, values).hex()


def make_raw_log(
    block_number: int = 100,
    log_index: int = 0,
    address: str = TOKEN_ADDRESS,
    topics: tuple[str, ...] | None = None,
    data: str | None = None,
) -> RawLog:
    """Build a Transfer log by default."""
    return RawLog(
        block_number=block_number,
        transaction_hash="0x" + f"{block_number:064x}",
        address=address,
        transaction_index=0,
        log_index=log_index,
        topics=topics
        if topics is not None
        else (TRANSFER_TOPIC, address_topic(SENDER), address_topic(RECIPIENT)),
        data=data if data is not None else abi_data(["uint256"], [1000]),
    )


def make_record(block_number: int = 100, log_index: int = 0) -> EventRecord:
    return EventRecord.from_raw(
        make_raw_log(block_number, log_index), timestamp="2024-01-01T00:00:00+00:00"
    )


# ---------------------------------------------------------------------------
# Protocol fakes
# ---------------------------------------------------------------------------


class FakeSubscriber:
    """In-memory subscriber handle recording every message it receives."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.messages: list[str] = []
        self.fail = fail
        self.delay = delay
        self.open = True
        self.closed_with: tuple[int, str] | None = None

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, message: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.messages.append(message)

    async def close(self, code: int, reason: str) -> None:
        self.open = False
        self.closed_with = (code, reason)


class MemoryTarget:
    """Persistent target keeping appended payloads in memory."""

    def __init__(self) -> None:
        self.payloads: list[bytes] = []
        self.fail_writes = 0
        self.close_calls = 0
        self.gate: asyncio.Event | None = None

    async def append(self, payload: bytes) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise OSError("disk full")
        self.payloads.append(payload)

    async def close(self) -> None:
        self.close_calls += 1

    @property
    def lines(self) -> list[str]:
        return b"".join(self.payloads).decode("utf-8").splitlines()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the event loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> StreamerSettings:
    """Small, fast settings for unit tests."""
    return StreamerSettings(
        max_reconnect_attempts=3,
        reconnect_base_delay_ms=1000,
        connection_timeout_ms=200,
        batch_size=2,
        sink_flush_threshold=3,
        sink_flush_interval_seconds=0,
        subscriber_send_timeout_seconds=0.2,
        request_timeout_seconds=1.0,
    )
