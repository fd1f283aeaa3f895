"""
Shared data types for the block event relay.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"  # initial, and after shutdown()
    CONNECTING = "connecting"  # handshake + newHeads subscription in flight
    CONNECTED = "connected"  # block notifications are being processed
    RECONNECTING = "reconnecting"  # waiting out the backoff delay
    FAILED = "failed"  # attempts exhausted; terminal


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_quantity(value: Any) -> int:
    """Parse a JSON-RPC quantity (0x-hex string, decimal string or int)."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    s = str(value)
    return int(s, 16) if s.lower().startswith("0x") else int(s)


def _to_hex(value: Any) -> str:
    """Normalize bytes / hex strings to lowercase 0x-prefixed hex."""
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    s = str(value).lower()
    return s if s.startswith("0x") else "0x" + s


# ---------------------------------------------------------------------------
# Upstream log
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawLog:
    """One log entry exactly as the node returned it (minimally normalized)."""

    block_number: int
    transaction_hash: str
    address: str
    transaction_index: int
    log_index: int
    topics: tuple[str, ...]  # 0-4 entries, topic[0] = event signature hash
    data: str  # 0x-hex

    @classmethod
    def from_rpc(cls, entry: dict[str, Any]) -> RawLog:
        """Build from an eth_getLogs result entry."""
        return cls(
            block_number=parse_quantity(entry.get("blockNumber")),
            transaction_hash=_to_hex(entry.get("transactionHash")),
            address=str(entry.get("address", "")),
            transaction_index=parse_quantity(entry.get("transactionIndex")),
            log_index=parse_quantity(entry.get("logIndex")),
            topics=tuple(_to_hex(t) for t in entry.get("topics") or ()),
            data=_to_hex(entry.get("data") or "0x"),
        )


# ---------------------------------------------------------------------------
# Normalized event record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecodedArg:
    name: str
    type: str  # canonical ABI type, e.g. "uint256", "(address,uint128)[]"
    value: Any  # large ints already rendered as decimal strings


@dataclass(frozen=True)
class DecodedEvent:
    name: str
    signature: str  # e.g. "Transfer(address,address,uint256)"
    args: tuple[DecodedArg, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "signature": self.signature,
            "args": [{"name": a.name, "type": a.type, "value": a.value} for a in self.args],
        }


@dataclass(frozen=True)
class EventRecord:
    """Unit of broadcast and persistence. Immutable once built."""

    block_number: int
    transaction_hash: str
    address: str
    transaction_index: int
    log_index: int
    topics: tuple[str, ...]
    data: str
    timestamp: str  # ISO-8601 UTC capture time
    decoded: DecodedEvent | None = None

    @classmethod
    def from_raw(
        cls, raw: RawLog, timestamp: str, decoded: DecodedEvent | None = None
    ) -> EventRecord:
        return cls(
            block_number=raw.block_number,
            transaction_hash=raw.transaction_hash,
            address=raw.address,
            transaction_index=raw.transaction_index,
            log_index=raw.log_index,
            topics=raw.topics,
            data=raw.data,
            timestamp=timestamp,
            decoded=decoded,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "address": self.address,
            "transaction_index": self.transaction_index,
            "log_index": self.log_index,
            "topics": list(self.topics),
            "data": self.data,
            "timestamp": self.timestamp,
            "decoded": self.decoded.to_dict() if self.decoded is not None else None,
        }


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamerSettings:
    max_reconnect_attempts: int = 5
    reconnect_base_delay_ms: int = 5000
    connection_timeout_ms: int = 10000
    batch_size: int = 100
    sink_flush_threshold: int = 50
    sink_flush_interval_seconds: float = 5.0  # 0 disables the periodic flush loop
    subscriber_send_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
