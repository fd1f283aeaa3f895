"""
Best-effort ABI decoding of raw EVM logs.

A ContractInterface is built once per registered ABI and maps topic0 hashes
to event shapes. decode_log() turns a RawLog into an EventRecord, attaching
the decoded event when the emitting contract has an interface and the log
matches one of its events. Decoding never raises: any failure yields a record
with decoded=None.

Usage:
    iface = ContractInterface(abi)
    record = decode_log(raw_log, registry.lookup)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from eth_abi.abi import decode as abi_decode
from web3 import Web3

from bot_logging.logger_manager import setup_module_logger
from shared.constants import MAX_SAFE_INTEGER
from shared.types import DecodedArg, DecodedEvent, EventRecord, RawLog

_logger = setup_module_logger("decoder", "decoder.log", module_folder="Pipeline_Logs")


class DecodeError(Exception):
    """Raised when a log matches an event by topic0 but cannot be decoded."""

    pass


# ---------------------------------------------------------------------------
# ABI helpers
# ---------------------------------------------------------------------------


def _canonical_type(param: dict[str, Any]) -> str:
    """Render an ABI input type canonically; tuples expand to (t1,t2,...)."""
    abi_type = param.get("type", "")
    if abi_type.startswith("tuple"):
        inner = ",".join(_canonical_type(c) for c in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


def _is_dynamic(abi_type: str) -> bool:
    """Indexed values of these types are stored as keccak hashes in topics."""
    return abi_type in ("string", "bytes") or abi_type.endswith("]") or abi_type.startswith("(")


def _normalize_value(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    return value


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith(("0x", "0X")) else value)


def _topic_hash(signature: str) -> str:
    digest = Web3.keccak(text=signature).hex()
    digest = digest.lower()
    return digest if digest.startswith("0x") else "0x" + digest


# ---------------------------------------------------------------------------
# Contract interface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _EventShape:
    name: str
    signature: str
    inputs: tuple[tuple[str, str, bool], ...]  # (name, canonical type, indexed)


class ContractInterface:
    """Event lookup table for one contract ABI, keyed by topic0."""

    def __init__(self, abi: list[dict[str, Any]]) -> None:
        if not isinstance(abi, list):
            raise DecodeError(f"ABI must be a list of entries, got {type(abi).__name__}")

        self._events: dict[str, _EventShape] = {}
        for entry in abi:
            if not isinstance(entry, dict) or entry.get("type") != "event":
                continue
            if entry.get("anonymous"):
                continue
            inputs = tuple(
                (
                    param.get("name") or f"arg{i}",
                    _canonical_type(param),
                    bool(param.get("indexed", False)),
                )
                for i, param in enumerate(entry.get("inputs", []))
            )
            signature = f"{entry['name']}({','.join(t for _, t, _ in inputs)})"
            self._events[_topic_hash(signature)] = _EventShape(entry["name"], signature, inputs)

    @property
    def event_count(self) -> int:
        return len(self._events)

    def parse_log(self, topics: tuple[str, ...] | list[str], data: str) -> DecodedEvent | None:
        """
        Decode a log against this interface.

        Returns None when topic0 matches no known event. Raises DecodeError
        when the topic count disagrees with the indexed inputs or the data
        section cannot be ABI-decoded.
        """
        if not topics:
            return None
        shape = self._events.get(topics[0].lower())
        if shape is None:
            return None

        indexed = [(n, t) for n, t, is_indexed in shape.inputs if is_indexed]
        if len(topics) - 1 != len(indexed):
            raise DecodeError(
                f"{shape.signature}: expected {len(indexed)} indexed topics, got {len(topics) - 1}"
            )

        indexed_values: list[Any] = []
        for topic, (_, abi_type) in zip(topics[1:], indexed):
            if _is_dynamic(abi_type):
                indexed_values.append(topic.lower())
            else:
                indexed_values.append(abi_decode([abi_type], _hex_to_bytes(topic))[0])

        data_types = [t for _, t, is_indexed in shape.inputs if not is_indexed]
        data_values: list[Any] = []
        if data_types:
            try:
                data_values = list(abi_decode(data_types, _hex_to_bytes(data or "0x")))
            except Exception as exc:
                raise DecodeError(f"{shape.signature}: cannot decode data: {exc}") from exc

        args = []
        indexed_iter = iter(indexed_values)
        data_iter = iter(data_values)
        for name, abi_type, is_indexed in shape.inputs:
            value = next(indexed_iter) if is_indexed else next(data_iter)
            args.append(DecodedArg(name=name, type=abi_type, value=_normalize_value(value)))

        return DecodedEvent(name=shape.name, signature=shape.signature, args=tuple(args))


# ---------------------------------------------------------------------------
# Log decoding
# ---------------------------------------------------------------------------


def decode_log(
    raw_log: RawLog, lookup: Callable[[str], ContractInterface | None]
) -> EventRecord:
    """Build an EventRecord from a raw log, decoding it when possible."""
    timestamp = datetime.now(timezone.utc).isoformat()
    address = raw_log.address.lower()

    interface = lookup(address)
    if interface is None:
        return EventRecord.from_raw(raw_log, timestamp)

    try:
        decoded = interface.parse_log(raw_log.topics, raw_log.data)
    except Exception as exc:
        _logger.debug(
            "Decode failed for %s block=%d log_index=%d: %s",
            address,
            raw_log.block_number,
            raw_log.log_index,
            exc,
        )
        decoded = None

    return EventRecord.from_raw(raw_log, timestamp, decoded=decoded)
