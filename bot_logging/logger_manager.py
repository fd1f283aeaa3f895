"""
Centralized logging for the block event relay.

Provides standardized logging with JSON and human-readable formatters and
per-component log files grouped into module folders.

Usage:
    from bot_logging.logger_manager import setup_module_logger, create_module_log_directories

    create_module_log_directories()
    logger = setup_module_logger('event_sink', 'event_sink.log', module_folder='Sink_Logs')
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

# Resolve project root
_PROJECT_ROOT = Path(__file__).parent.parent

# Load logging config
try:
    from config.loader import get_config

    _app_config = get_config().get_app_config()
except ImportError:
    _app_config = {}

_LOGGING_CONFIG = _app_config.get("logging", {})
_LOG_DIR = str(_PROJECT_ROOT / _LOGGING_CONFIG.get("log_dir", "logs"))
_JSON_BY_DEFAULT = bool(_LOGGING_CONFIG.get("json_format", False))
_MODULE_FOLDERS = _LOGGING_CONFIG.get(
    "module_folders",
    {
        "main": "Main_Logs",
        "connection_manager": "Connection_Logs",
        "event_pipeline": "Pipeline_Logs",
        "broadcast_hub": "Subscriber_Logs",
        "event_sink": "Sink_Logs",
        "interface_registry": "Registry_Logs",
    },
)


# ============================================================================
# FORMATTERS
# ============================================================================


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        # Include extra fields if present
        for key in (
            "block_number",
            "log_index",
            "contract_address",
            "connection_state",
            "attempt",
            "error",
        ):
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Pretty-printed log formatter for console and human-readable files."""

    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self.FORMAT, datefmt=self.DATE_FORMAT)


# ============================================================================
# LOGGER FACTORY
# ============================================================================

_logger_cache: dict[str, logging.Logger] = {}


def create_module_log_directories() -> dict[str, str]:
    """
    Create organized log directory structure.

    Returns dict mapping folder key to absolute path.
    """
    created = {}
    os.makedirs(_LOG_DIR, exist_ok=True)
    for key, folder_name in _MODULE_FOLDERS.items():
        folder_path = os.path.join(_LOG_DIR, folder_name)
        os.makedirs(folder_path, exist_ok=True)
        created[key] = folder_path
    return created


def setup_module_logger(
    name: str,
    log_file: str,
    level: int = logging.INFO,
    module_folder: str | None = None,
    use_json_formatter: bool | None = None,
) -> logging.Logger:
    """
    Create a component-specific logger with a file handler.

    Args:
        name: Logger name (should be unique per component).
        log_file: Log filename (placed inside module_folder if specified).
        level: Logging level (default INFO).
        module_folder: Subfolder within logs/ directory (e.g., 'Sink_Logs').
        use_json_formatter: Structured JSON format; None follows app.json logging.json_format.

    Returns:
        Configured logging.Logger instance.
    """
    # Return cached logger if already created
    cache_key = f"{name}:{module_folder}:{log_file}"
    if cache_key in _logger_cache:
        return _logger_cache[cache_key]

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Prevent duplicate handlers
    if logger.handlers:
        _logger_cache[cache_key] = logger
        return logger

    # Determine log file path
    if module_folder:
        log_path = os.path.join(_LOG_DIR, module_folder, log_file)
    else:
        log_path = os.path.join(_LOG_DIR, log_file)
    os.makedirs(os.path.dirname(log_path), exist_ok=True)

    # Select formatter
    if use_json_formatter is None:
        use_json_formatter = _JSON_BY_DEFAULT
    formatter: logging.Formatter = (
        JSONFormatter() if use_json_formatter else HumanReadableFormatter()
    )

    # File handler
    file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    _logger_cache[cache_key] = logger
    return logger
