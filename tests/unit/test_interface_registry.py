"""
Unit tests for core/interface_registry.py.

Tests cover registration and case-insensitive lookup, ABI directory loading
(both file layouts, malformed files) and directory re-sync.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import ERC20_EVENTS_ABI, RECIPIENT, TOKEN_ADDRESS, TOKEN_ADDRESS_CHECKSUM

from core.interface_registry import InterfaceRegistry, normalize_address


@pytest.fixture
def registry():
    with patch("core.interface_registry.setup_module_logger"):
        yield InterfaceRegistry()


def _write_abi(directory, address, content):
    path = directory / f"{address}.json"
    path.write_text(json.dumps(content))
    return path


class TestNormalizeAddress:
    def test_lowercases_and_prefixes(self):
        assert normalize_address(TOKEN_ADDRESS_CHECKSUM) == TOKEN_ADDRESS
        assert normalize_address(TOKEN_ADDRESS[2:]) == TOKEN_ADDRESS


class TestRegistration:
    def test_lookup_is_case_insensitive(self, registry):
        iface = registry.register(TOKEN_ADDRESS_CHECKSUM, ERC20_EVENTS_ABI)
        assert registry.lookup(TOKEN_ADDRESS) is iface
        assert registry.lookup(TOKEN_ADDRESS_CHECKSUM) is iface
        assert TOKEN_ADDRESS_CHECKSUM in registry
        assert len(registry) == 1

    def test_unknown_address_returns_none(self, registry):
        assert registry.lookup(RECIPIENT) is None
        assert RECIPIENT not in registry

    def test_invalid_address_rejected(self, registry):
        with pytest.raises(ValueError, match="Invalid contract address"):
            registry.register("not-an-address", ERC20_EVENTS_ABI)

    def test_register_replaces_previous(self, registry):
        first = registry.register(TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        second = registry.register(TOKEN_ADDRESS, ERC20_EVENTS_ABI[:1])
        assert registry.lookup(TOKEN_ADDRESS) is second
        assert first is not second
        assert second.event_count == 1

    def test_remove(self, registry):
        registry.register(TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        assert registry.remove(TOKEN_ADDRESS_CHECKSUM) is True
        assert registry.lookup(TOKEN_ADDRESS) is None
        assert registry.remove(TOKEN_ADDRESS) is False

    def test_stats(self, registry):
        assert registry.get_stats() == {"count": 0, "addresses": [], "last_updated": None}
        registry.register(TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        stats = registry.get_stats()
        assert stats["count"] == 1
        assert stats["addresses"] == [TOKEN_ADDRESS]
        assert stats["last_updated"] is not None


class TestLoadDirectory:
    def test_loads_both_file_layouts(self, registry, tmp_path):
        _write_abi(tmp_path, TOKEN_ADDRESS_CHECKSUM, ERC20_EVENTS_ABI)
        _write_abi(tmp_path, RECIPIENT, {"abi": ERC20_EVENTS_ABI})
        assert registry.load_directory(tmp_path) == 2
        assert registry.lookup(TOKEN_ADDRESS) is not None
        assert registry.lookup(RECIPIENT) is not None

    def test_malformed_files_are_skipped(self, registry, tmp_path):
        _write_abi(tmp_path, TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        (tmp_path / f"{RECIPIENT}.json").write_text("{not json")
        _write_abi(tmp_path, "garbage", ERC20_EVENTS_ABI)
        (tmp_path / "README.md").write_text("ignored")
        assert registry.load_directory(tmp_path) == 1
        assert len(registry) == 1

    def test_missing_directory(self, registry, tmp_path):
        assert registry.load_directory(tmp_path / "absent") == 0


class TestSyncDirectory:
    def test_reports_updates_and_removals(self, registry, tmp_path):
        token_file = _write_abi(tmp_path, TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        recipient_file = _write_abi(tmp_path, RECIPIENT, ERC20_EVENTS_ABI)
        registry.load_directory(tmp_path)

        # Unchanged directory: nothing to report
        assert registry.sync_directory(tmp_path) == ([], [])

        token_file.write_text(json.dumps(ERC20_EVENTS_ABI[:1]))
        stat = token_file.stat()
        os.utime(token_file, (stat.st_atime, stat.st_mtime + 10))
        recipient_file.unlink()

        updated, removed = registry.sync_directory(tmp_path)
        assert updated == [TOKEN_ADDRESS]
        assert removed == [RECIPIENT]
        assert registry.lookup(TOKEN_ADDRESS).event_count == 1
        assert registry.lookup(RECIPIENT) is None

    def test_new_file_is_picked_up(self, registry, tmp_path):
        registry.load_directory(tmp_path)
        _write_abi(tmp_path, TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        assert registry.sync_directory(tmp_path) == ([TOKEN_ADDRESS], [])

    def test_manual_registrations_survive_sync(self, registry, tmp_path):
        registry.register(TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        assert registry.sync_directory(tmp_path) == ([], [])
        assert TOKEN_ADDRESS in registry

    def test_file_deleted_during_sync_is_skipped(self, registry, tmp_path):
        _write_abi(tmp_path, TOKEN_ADDRESS, ERC20_EVENTS_ABI)
        vanishing = _write_abi(tmp_path, RECIPIENT, ERC20_EVENTS_ABI)
        real_stat = Path.stat

        def stat_racing_delete(self, *args, **kwargs):
            if self == vanishing:
                raise FileNotFoundError(str(self))
            return real_stat(self, *args, **kwargs)

        with patch.object(Path, "stat", stat_racing_delete):
            updated, removed = registry.sync_directory(tmp_path)

        assert updated == [TOKEN_ADDRESS]
        assert removed == []
        assert RECIPIENT not in registry
