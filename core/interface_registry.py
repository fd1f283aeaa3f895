"""
In-memory registry of contract interfaces keyed by address.

Addresses are stored lowercase and 0x-prefixed, so lookups are
case-insensitive. ABIs can be registered one by one or loaded from a
directory of <address>.json files (raw ABI array or {"abi": [...]}).
sync_directory() re-reads the directory and reports which addresses were
added/changed or removed, so subscribers can be notified.

Usage:
    registry = InterfaceRegistry()
    registry.load_directory(Path("abis"))
    iface = registry.lookup("0xA0b8...")
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from eth_utils import is_address

from bot_logging.logger_manager import setup_module_logger
from core.decoder import ContractInterface


def normalize_address(address: str) -> str:
    address = address.strip().lower()
    return address if address.startswith("0x") else "0x" + address


def _read_abi_file(file: Path) -> list[dict[str, Any]]:
    with open(file, "r") as f:
        content = json.load(f)
    return content.get("abi") if isinstance(content, dict) else content


class InterfaceRegistry:
    """Address -> ContractInterface map with modification tracking."""

    def __init__(self) -> None:
        self._interfaces: dict[str, ContractInterface] = {}
        self._file_mtimes: dict[str, float] = {}  # addresses that came from an ABI directory
        self._last_updated: float | None = None

        self._logger = setup_module_logger(
            "interface_registry", "interface_registry.log", module_folder="Registry_Logs"
        )

    def register(self, address: str, abi: list[dict[str, Any]]) -> ContractInterface:
        """Build and store an interface; replaces any previous one for the address."""
        key = normalize_address(address)
        if not is_address(key):
            raise ValueError(f"Invalid contract address: {address!r}")
        interface = ContractInterface(abi)
        self._interfaces[key] = interface
        self._last_updated = time.time()
        self._logger.info("Registered ABI for %s (%d events)", key, interface.event_count)
        return interface

    def remove(self, address: str) -> bool:
        key = normalize_address(address)
        self._file_mtimes.pop(key, None)
        if self._interfaces.pop(key, None) is None:
            return False
        self._last_updated = time.time()
        self._logger.info("Removed ABI for %s", key)
        return True

    def lookup(self, address: str) -> ContractInterface | None:
        return self._interfaces.get(normalize_address(address))

    # ------------------------------------------------------------------
    # ABI directory
    # ------------------------------------------------------------------

    def load_directory(self, path: Path) -> int:
        """
        Register every <address>.json file in a directory.

        Malformed files are logged and skipped. Returns the number loaded.
        """
        path = Path(path)
        if not path.is_dir():
            self._logger.warning("ABI directory not found: %s", path)
            return 0

        loaded = 0
        for file in sorted(path.glob("*.json")):
            if self._load_file(file):
                loaded += 1

        self._logger.info("Loaded %d ABI file(s) from %s", loaded, path)
        return loaded

    def sync_directory(self, path: Path) -> tuple[list[str], list[str]]:
        """
        Re-read an ABI directory.

        New or modified files are (re)registered; addresses previously loaded
        from the directory whose file disappeared are removed. Returns
        (updated_addresses, removed_addresses).
        """
        path = Path(path)
        files = {normalize_address(f.stem): f for f in path.glob("*.json")} if path.is_dir() else {}

        updated = []
        for key, file in sorted(files.items()):
            try:
                mtime = file.stat().st_mtime
            except OSError as exc:
                # Deleted between glob and stat; picked up as removed on the next sync
                self._logger.warning("Cannot stat ABI file %s: %s", file.name, exc)
                continue
            if self._file_mtimes.get(key) == mtime and key in self._interfaces:
                continue
            if self._load_file(file, mtime):
                updated.append(key)

        removed = []
        for key in sorted(set(self._file_mtimes) - set(files)):
            self.remove(key)
            removed.append(key)

        if updated or removed:
            self._logger.info(
                "ABI directory sync: %d updated, %d removed", len(updated), len(removed)
            )
        return updated, removed

    def _load_file(self, file: Path, mtime: float | None = None) -> bool:
        try:
            if mtime is None:
                mtime = file.stat().st_mtime
            self.register(file.stem, _read_abi_file(file))
        except Exception as exc:
            self._logger.error("Skipping ABI file %s: %s", file.name, exc)
            return False
        self._file_mtimes[normalize_address(file.stem)] = mtime
        return True

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            "count": len(self._interfaces),
            "addresses": sorted(self._interfaces),
            "last_updated": self._last_updated,
        }

    def __len__(self) -> int:
        return len(self._interfaces)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and normalize_address(address) in self._interfaces
