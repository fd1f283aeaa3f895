"""
Configuration loader for the block event relay.

Provides centralized configuration management with .env overrides.

Usage:
    from config.loader import get_config, get_env_var

    config = get_config()
    settings = config.get_streamer_settings()
    ws_url = config.get_node_ws_url()
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from shared.types import StreamerSettings

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent


def _load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None:
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


class ConfigLoader:
    """
    Central configuration manager for the block event relay.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    File accessors are cached via @lru_cache.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR
        self._project_root = _PROJECT_ROOT

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=1)
    def get_streamer_config(self) -> Dict[str, Any]:
        """Load connection / pipeline / sink / subscriber settings."""
        return _load_json(self._config_dir / "streamer.json")

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (paths, logging)."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=16)
    def get_config_file(self, config_name: str) -> Dict[str, Any]:
        """Load an arbitrary JSON config file from config/ directory."""
        return _load_json(self._config_dir / f"{config_name}.json")

    # ------------------------------------------------------------------
    # Typed views with environment overrides
    # ------------------------------------------------------------------

    def get_streamer_settings(self) -> StreamerSettings:
        """Build StreamerSettings from streamer.json, overridable per value by env."""
        cfg = self.get_streamer_config()
        conn = cfg.get("connection", {})
        pipeline = cfg.get("pipeline", {})
        sink = cfg.get("sink", {})
        subscribers = cfg.get("subscribers", {})
        defaults = StreamerSettings()

        return StreamerSettings(
            max_reconnect_attempts=get_env_var(
                "MAX_RECONNECT_ATTEMPTS",
                conn.get("max_reconnect_attempts", defaults.max_reconnect_attempts),
                int,
            ),
            reconnect_base_delay_ms=get_env_var(
                "RECONNECT_BASE_DELAY_MS",
                conn.get("reconnect_base_delay_ms", defaults.reconnect_base_delay_ms),
                int,
            ),
            connection_timeout_ms=get_env_var(
                "CONNECTION_TIMEOUT_MS",
                conn.get("connection_timeout_ms", defaults.connection_timeout_ms),
                int,
            ),
            batch_size=get_env_var(
                "BATCH_SIZE", pipeline.get("batch_size", defaults.batch_size), int
            ),
            sink_flush_threshold=get_env_var(
                "SINK_FLUSH_THRESHOLD",
                sink.get("flush_threshold", defaults.sink_flush_threshold),
                int,
            ),
            sink_flush_interval_seconds=get_env_var(
                "SINK_FLUSH_INTERVAL_SECONDS",
                sink.get("flush_interval_seconds", defaults.sink_flush_interval_seconds),
                float,
            ),
            subscriber_send_timeout_seconds=subscribers.get(
                "send_timeout_seconds", defaults.subscriber_send_timeout_seconds
            ),
            request_timeout_seconds=conn.get(
                "request_timeout_seconds", defaults.request_timeout_seconds
            ),
        )

    def get_node_ws_url(self) -> str:
        """Upstream node WebSocket URL (NODE_WS_URL env wins over streamer.json)."""
        return get_env_var(
            "NODE_WS_URL", self.get_streamer_config().get("connection", {}).get("ws_url", ""), str
        )

    def get_websocket_options(self) -> Dict[str, Any]:
        """Keepalive / frame size options for the upstream websockets client."""
        return self.get_streamer_config().get("connection", {}).get("websocket", {})

    def get_subscriber_server_config(self) -> Dict[str, Any]:
        """Host/port for the subscriber WebSocket server."""
        subscribers = self.get_streamer_config().get("subscribers", {})
        return {
            "host": get_env_var("SUBSCRIBER_HOST", subscribers.get("host", "0.0.0.0"), str),
            "port": get_env_var("SUBSCRIBER_PORT", subscribers.get("port", 3000), int),
        }

    def get_events_log_path(self) -> Path:
        """Audit log path; relative paths resolve against the project root."""
        raw = get_env_var(
            "EVENTS_LOG_PATH", self.get_app_config().get("events_log_path", "events.log"), str
        )
        return self._resolve(raw)

    def get_abi_dir(self) -> Path:
        """Directory holding <address>.json ABI files."""
        raw = get_env_var("ABI_DIR", self.get_app_config().get("abi_dir", "abis"), str)
        return self._resolve(raw)

    def _resolve(self, raw: str) -> Path:
        path = Path(raw)
        return path if path.is_absolute() else self._project_root / path

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()
