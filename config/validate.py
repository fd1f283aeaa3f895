"""
Configuration schema validation for the block event relay.

Validates that all required config files exist, contain required keys, and
that numeric settings are within range. Run at startup to fail fast on
misconfiguration.
"""

from typing import Any

from config.loader import get_config


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def _lookup(config: dict[str, Any], key: str) -> Any:
    current: Any = config
    for part in key.split("."):
        current = current[part]
    return current


def _check_int_min(config: dict[str, Any], key: str, minimum: int) -> list[str]:
    """Flag a dotted key whose value is not an int >= minimum (missing keys are skipped)."""
    try:
        value = _lookup(config, key)
    except (KeyError, TypeError):
        return []
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        return [f"{key}: must be an integer >= {minimum} (got {value!r})"]
    return []


def validate_streamer_config(config: dict[str, Any]) -> list[str]:
    """Validate streamer.json has required fields with in-range values."""
    errors = _check_keys(
        config,
        [
            "connection.max_reconnect_attempts",
            "connection.reconnect_base_delay_ms",
            "connection.connection_timeout_ms",
            "pipeline.batch_size",
            "sink.flush_threshold",
        ],
        "streamer.json",
    )
    errors += _check_int_min(config, "connection.max_reconnect_attempts", 0)
    errors += _check_int_min(config, "connection.reconnect_base_delay_ms", 1)
    errors += _check_int_min(config, "connection.connection_timeout_ms", 1)
    errors += _check_int_min(config, "pipeline.batch_size", 1)
    errors += _check_int_min(config, "sink.flush_threshold", 1)
    return errors


def validate_app_config(config: dict[str, Any]) -> list[str]:
    """Validate app.json has required fields."""
    return _check_keys(config, ["abi_dir", "events_log_path", "logging.log_dir"], "app.json")


def validate_node_url(url: str) -> list[str]:
    """The upstream node must be reachable over a WebSocket URL."""
    if not url:
        return ["NODE_WS_URL: not set in environment or streamer.json connection.ws_url"]
    if not url.startswith(("ws://", "wss://")):
        return [f"NODE_WS_URL: a WebSocket URL (ws:// or wss://) is required (got {url[:16]}...)"]
    return []


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing or out of range.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "streamer.json": (loader.get_streamer_config, validate_streamer_config),
        "app.json": (loader.get_app_config, validate_app_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    url_errors = validate_node_url(loader.get_node_ws_url())
    if url_errors:
        all_errors["environment"] = url_errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - {error}")
        raise ConfigValidationError("\n".join(lines))
