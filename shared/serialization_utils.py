"""
Serialization utilities for the block event relay.

Provides JSON encoding for large integers, bytes, and the frozen record
dataclasses so a record is serialized identically for subscribers and for the
audit log.

Usage:
    from shared.serialization_utils import DecimalEncoder, to_json
    json.dumps(data, cls=DecimalEncoder)
"""

import json
from decimal import Decimal
from json import JSONEncoder
from typing import Any

from shared.constants import MAX_SAFE_INTEGER


class DecimalEncoder(JSONEncoder):
    """
    Custom JSON encoder handling Decimal, bytes, large integers, and objects
    exposing ``to_dict()``.

    Sources:
    - RFC 7159 section 6 (JSON number limits)
    - IEEE 754-2008 (double precision safe integer limit: 2^53 - 1)
    """

    _MAX_SAFE_INTEGER = MAX_SAFE_INTEGER

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (bytes, bytearray)):
            return "0x" + bytes(obj).hex()
        if hasattr(obj, "to_dict"):
            return self._convert_large_ints(obj.to_dict())
        return super().default(obj)

    def encode(self, obj: Any) -> str:
        """Override encode to convert large integers to strings before JSON serialization."""
        return super().encode(self._convert_large_ints(obj))

    def _convert_large_ints(self, obj: Any) -> Any:
        """
        Recursively convert integers exceeding IEEE 754 safe limits to strings.

        Preserves precision for uint256 amounts, which exceed JavaScript
        Number.MAX_SAFE_INTEGER.
        """
        if isinstance(obj, dict):
            return {k: self._convert_large_ints(v) for k, v in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._convert_large_ints(item) for item in obj]
        elif isinstance(obj, bool):
            return obj
        elif isinstance(obj, int) and (obj > self._MAX_SAFE_INTEGER or obj < -self._MAX_SAFE_INTEGER):
            return str(obj)
        return obj


def to_json(obj: Any) -> str:
    """Compact JSON string (no spaces) using DecimalEncoder."""
    return json.dumps(obj, cls=DecimalEncoder, separators=(",", ":"))
