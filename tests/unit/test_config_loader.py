"""
Unit tests for config/loader.py and config/validate.py.

Tests cover:
- JSON config file loading
- Environment variable overrides with type coercion
- Missing file graceful fallback (empty dict)
- Singleton pattern for ConfigLoader
- Typed StreamerSettings view
- Config validation (validate_all_configs)
- Cache management
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from config.loader import ConfigLoader, get_config, get_env_var
from config.validate import (
    ConfigValidationError,
    validate_all_configs,
    validate_app_config,
    validate_node_url,
    validate_streamer_config,
)
from shared.types import StreamerSettings

VALID_STREAMER_CONFIG = {
    "connection": {
        "max_reconnect_attempts": 5,
        "reconnect_base_delay_ms": 5000,
        "connection_timeout_ms": 10000,
    },
    "pipeline": {"batch_size": 100},
    "sink": {"flush_threshold": 50},
}

VALID_APP_CONFIG = {"abi_dir": "abis", "events_log_path": "events.log", "logging": {"log_dir": "logs"}}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_singleton():
    """Reset the ConfigLoader singleton between tests."""
    ConfigLoader._instance = None
    yield
    ConfigLoader._instance = None


@pytest.fixture
def clean_env():
    """Remove relay env overrides for the duration of a test."""
    names = [
        "NODE_WS_URL",
        "MAX_RECONNECT_ATTEMPTS",
        "RECONNECT_BASE_DELAY_MS",
        "CONNECTION_TIMEOUT_MS",
        "BATCH_SIZE",
        "SINK_FLUSH_THRESHOLD",
        "SINK_FLUSH_INTERVAL_SECONDS",
        "SUBSCRIBER_HOST",
        "SUBSCRIBER_PORT",
        "EVENTS_LOG_PATH",
        "ABI_DIR",
    ]
    saved = {name: os.environ.pop(name) for name in names if name in os.environ}
    yield
    for name in names:
        os.environ.pop(name, None)
    os.environ.update(saved)


# ===========================================================================
# ConfigLoader tests
# ===========================================================================


class TestConfigLoaderSingleton:
    def test_get_instance_returns_same_object(self):
        """Singleton pattern should return the same instance."""
        a = ConfigLoader.get_instance()
        b = ConfigLoader.get_instance()
        assert a is b

    def test_get_config_returns_singleton(self):
        """Module-level get_config() should return singleton."""
        cfg = get_config()
        assert cfg is ConfigLoader.get_instance()

    def test_fresh_instance_after_reset(self):
        """After resetting _instance, a new one is created."""
        first = ConfigLoader.get_instance()
        ConfigLoader._instance = None
        second = ConfigLoader.get_instance()
        assert first is not second


class TestConfigLoading:
    def test_get_streamer_config(self):
        """Streamer config should carry connection, pipeline and sink sections."""
        streamer = get_config().get_streamer_config()
        assert streamer["connection"]["max_reconnect_attempts"] == 5
        assert streamer["pipeline"]["batch_size"] == 100
        assert streamer["sink"]["flush_threshold"] == 50

    def test_get_app_config(self):
        app = get_config().get_app_config()
        assert "logging" in app
        assert "abi_dir" in app

    def test_missing_config_returns_empty_dict(self):
        """Loading a nonexistent config file should return {}."""
        result = get_config().get_config_file("nonexistent_config_xyz")
        assert result == {}


class TestTypedViews:
    def test_settings_from_json(self, clean_env):
        settings = get_config().get_streamer_settings()
        assert settings == StreamerSettings(
            max_reconnect_attempts=5,
            reconnect_base_delay_ms=5000,
            connection_timeout_ms=10000,
            batch_size=100,
            sink_flush_threshold=50,
            sink_flush_interval_seconds=5,
            subscriber_send_timeout_seconds=5,
            request_timeout_seconds=30,
        )

    def test_settings_env_overrides(self, clean_env):
        with patch.dict(os.environ, {"MAX_RECONNECT_ATTEMPTS": "9", "BATCH_SIZE": "10"}):
            settings = get_config().get_streamer_settings()
        assert settings.max_reconnect_attempts == 9
        assert settings.batch_size == 10
        assert settings.reconnect_base_delay_ms == 5000

    def test_node_url_from_env(self, clean_env):
        assert get_config().get_node_ws_url() == ""
        with patch.dict(os.environ, {"NODE_WS_URL": "wss://node.example/ws"}):
            assert get_config().get_node_ws_url() == "wss://node.example/ws"

    def test_subscriber_server_config(self, clean_env):
        assert get_config().get_subscriber_server_config() == {"host": "0.0.0.0", "port": 3000}
        with patch.dict(os.environ, {"SUBSCRIBER_PORT": "4000"}):
            assert get_config().get_subscriber_server_config()["port"] == 4000

    def test_relative_paths_resolve_against_project_root(self, clean_env):
        cfg = get_config()
        project_root = Path(__file__).resolve().parent.parent.parent
        assert cfg.get_events_log_path().resolve() == project_root / "events.log"
        assert cfg.get_abi_dir().resolve() == project_root / "abis"

    def test_absolute_path_kept(self, clean_env, tmp_path):
        with patch.dict(os.environ, {"EVENTS_LOG_PATH": str(tmp_path / "out.log")}):
            assert get_config().get_events_log_path() == tmp_path / "out.log"

    def test_websocket_options(self):
        options = get_config().get_websocket_options()
        assert options["max_message_bytes"] == 10 * 1024 * 1024


class TestCacheManagement:
    def test_cache_produces_same_result(self):
        """Cached calls should return the same object."""
        cfg = get_config()
        a = cfg.get_streamer_config()
        b = cfg.get_streamer_config()
        assert a is b

    def test_clear_cache(self):
        """clear_cache should not raise and should allow fresh loads."""
        cfg = get_config()
        _ = cfg.get_streamer_config()
        cfg.clear_cache()
        result = cfg.get_streamer_config()
        assert isinstance(result, dict)


# ===========================================================================
# get_env_var tests
# ===========================================================================


class TestGetEnvVar:
    def test_bool_true_values(self):
        """Boolean 'true', '1', 'yes' should parse as True."""
        for val in ("true", "True", "TRUE", "1", "yes"):
            with patch.dict(os.environ, {"TEST_BOOL": val}):
                assert get_env_var("TEST_BOOL", False, bool) is True

    def test_int_conversion(self):
        with patch.dict(os.environ, {"TEST_INT": "42"}):
            assert get_env_var("TEST_INT", 0, int) == 42

    def test_float_conversion(self):
        with patch.dict(os.environ, {"TEST_FLOAT": "2.5"}):
            assert get_env_var("TEST_FLOAT", 0.0, float) == pytest.approx(2.5)

    def test_missing_var_returns_default(self):
        os.environ.pop("DEFINITELY_NOT_SET_XYZ", None)
        assert get_env_var("DEFINITELY_NOT_SET_XYZ", "fallback", str) == "fallback"

    def test_invalid_int_returns_default(self):
        """Non-numeric value for int should return default."""
        with patch.dict(os.environ, {"TEST_BAD_INT": "abc"}):
            assert get_env_var("TEST_BAD_INT", 99, int) == 99


# ===========================================================================
# Config validation tests
# ===========================================================================


class TestValidateStreamerConfig:
    def test_valid(self):
        assert validate_streamer_config(VALID_STREAMER_CONFIG) == []

    def test_missing_keys(self):
        errors = validate_streamer_config({"connection": {}})
        assert "connection.max_reconnect_attempts" in errors
        assert "pipeline.batch_size" in errors

    def test_out_of_range_values(self):
        cfg = {
            **VALID_STREAMER_CONFIG,
            "pipeline": {"batch_size": 0},
            "sink": {"flush_threshold": "50"},
        }
        errors = validate_streamer_config(cfg)
        assert any(e.startswith("pipeline.batch_size") for e in errors)
        assert any(e.startswith("sink.flush_threshold") for e in errors)

    def test_zero_attempts_allowed(self):
        cfg = {**VALID_STREAMER_CONFIG, "connection": {**VALID_STREAMER_CONFIG["connection"]}}
        cfg["connection"]["max_reconnect_attempts"] = 0
        assert validate_streamer_config(cfg) == []


class TestValidateAppConfig:
    def test_valid(self):
        assert validate_app_config(VALID_APP_CONFIG) == []

    def test_missing_log_dir(self):
        assert validate_app_config({"abi_dir": "a", "events_log_path": "b"}) == ["logging.log_dir"]


class TestValidateNodeUrl:
    def test_ws_schemes_accepted(self):
        assert validate_node_url("ws://localhost:8546") == []
        assert validate_node_url("wss://node.example") == []

    def test_empty_rejected(self):
        assert validate_node_url("")

    def test_http_rejected(self):
        errors = validate_node_url("https://node.example")
        assert "WebSocket URL" in errors[0]


class TestValidateAllConfigs:
    def test_all_configs_valid(self, clean_env):
        """Real config files plus a node URL should validate."""
        with patch.dict(os.environ, {"NODE_WS_URL": "ws://localhost:8546"}):
            validate_all_configs()  # Should not raise

    def test_missing_node_url_fails(self, clean_env):
        with pytest.raises(ConfigValidationError, match="NODE_WS_URL"):
            validate_all_configs()

    def test_raises_on_invalid(self):
        mock_loader = MagicMock()
        mock_loader.get_streamer_config.return_value = {}
        mock_loader.get_app_config.return_value = {}
        mock_loader.get_node_ws_url.return_value = "ws://x"

        with (
            patch("config.validate.get_config", return_value=mock_loader),
            pytest.raises(ConfigValidationError, match="empty or not found"),
        ):
            validate_all_configs()

    def test_error_message_includes_details(self):
        mock_loader = MagicMock()
        mock_loader.get_streamer_config.return_value = {
            **VALID_STREAMER_CONFIG,
            "pipeline": {"batch_size": -1},
        }
        mock_loader.get_app_config.return_value = VALID_APP_CONFIG
        mock_loader.get_node_ws_url.return_value = "ws://x"

        with (
            patch("config.validate.get_config", return_value=mock_loader),
            pytest.raises(ConfigValidationError, match="pipeline.batch_size"),
        ):
            validate_all_configs()
