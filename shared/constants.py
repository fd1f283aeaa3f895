"""
Shared constants for the block event relay.

Numeric limits, JSON-RPC method names, and WebSocket close codes used across
all modules.
"""

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

# IEEE 754 double precision safe integer limit (JSON consumers in JS)
MAX_SAFE_INTEGER = 2**53 - 1

# ---------------------------------------------------------------------------
# JSON-RPC
# ---------------------------------------------------------------------------

JSONRPC_VERSION = "2.0"
METHOD_SUBSCRIBE = "eth_subscribe"
METHOD_GET_LOGS = "eth_getLogs"
METHOD_SUBSCRIPTION = "eth_subscription"  # notification method name
SUBSCRIPTION_NEW_HEADS = "newHeads"

# ---------------------------------------------------------------------------
# WebSocket close codes (RFC 6455 section 7.4.1)
# ---------------------------------------------------------------------------

CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006  # no close frame received
CLOSE_POLICY_VIOLATION = 1008

# ---------------------------------------------------------------------------
# Subscriber message types
# ---------------------------------------------------------------------------

MSG_REGISTRY_STATUS = "abi_registry_status"
MSG_ABI_UPDATED = "abi_updated"
MSG_ABI_REMOVED = "abi_removed"
