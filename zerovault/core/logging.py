"""
Secure Logging Module
=====================

Security-aware logging with secret filtering.

Security Features:
- Automatic secret/sensitive data filtering
- Optional rotating log files with size limits
- Structured (JSON) output for audit pipelines
- No key material, plaintext or ciphertext is ever logged by the engine;
  the filter is a second line of protection
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Optional, Pattern


_SENSITIVE_PATTERNS: Final[list[tuple[str, Pattern[str]]]] = [
    ("password", re.compile(r'(?i)(password|passwd|pwd|reauth_proof)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("token", re.compile(r'(?i)(token|bearer|grant)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    ("secret", re.compile(r'(?i)(secret|private[_-]?key|content[_-]?key|dek)\s*[=:]\s*["\']?[^\s"\']+["\']?')),
    # Base64 payloads such as encrypted metadata tokens
    ("base64_secret", re.compile(r'[A-Za-z0-9+/]{40,}={0,2}')),
    # Hex payloads such as wrapped keys or note ciphertext
    ("hex_secret", re.compile(r'(?i)(?:0x)?[a-f0-9]{32,}')),
]

_REDACTED_TEXT: Final[str] = "[REDACTED]"

PACKAGE_LOGGER: Final[str] = "zerovault"

# Settings applied by configure_logging(); loggers created later pick them up
_package_settings: dict[str, object] = {
    "level": "INFO",
    "enable_console": True,
    "enable_json": False,
}

_CONSOLE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_FILE_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"


class SecureLogFilter(logging.Filter):
    """
    Log filter that removes sensitive information from log messages.

    Scans messages and string arguments for patterns that might contain
    sensitive data and replaces them with [REDACTED].
    """

    def __init__(self, name: str = "", additional_patterns: Optional[list[Pattern[str]]] = None) -> None:
        super().__init__(name)
        self._additional_patterns = additional_patterns or []

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = self._sanitize(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._sanitize(v) if isinstance(v, str) else v
                               for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self._sanitize(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True

    def _sanitize(self, text: str) -> str:
        result = text

        for name, pattern in _SENSITIVE_PATTERNS:
            result = pattern.sub(f"{name}={_REDACTED_TEXT}", result)

        for pattern in self._additional_patterns:
            result = pattern.sub(_REDACTED_TEXT, result)

        return result


class StructuredLogFormatter(logging.Formatter):
    """Formatter that outputs logs as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        event = getattr(record, "event", None)
        if event is not None:
            log_data["event"] = event

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _in_package(name: str) -> bool:
    return name == PACKAGE_LOGGER or name.startswith(f"{PACKAGE_LOGGER}.")


def _console_handler(enable_json: bool, secure_filter: SecureLogFilter) -> logging.Handler:
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG)
    if enable_json:
        console_handler.setFormatter(StructuredLogFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    console_handler.addFilter(secure_filter)
    return console_handler


def get_secure_logger(
    name: str,
    log_dir: Optional[Path] = None,
    level: Optional[str] = None,
    enable_console: Optional[bool] = None,
    enable_json: Optional[bool] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Create a secure logger with automatic secret filtering.

    Args:
        name: Logger name (typically __name__)
        log_dir: Directory for log files (no file output if not provided)
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to output to stderr
        enable_json: Whether to use JSON format
        max_file_size: Maximum log file size before rotation
        backup_count: Number of backup files to keep

    Level, console and JSON settings default to those last passed to
    configure_logging().

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    level = level or str(_package_settings["level"])
    if enable_console is None:
        enable_console = bool(_package_settings["enable_console"])
    if enable_json is None:
        enable_json = bool(_package_settings["enable_json"])

    logger.setLevel(getattr(logging, level.upper()))
    secure_filter = SecureLogFilter()

    if enable_console:
        logger.addHandler(_console_handler(enable_json, secure_filter))

    if log_dir:
        log_path = (Path(log_dir) / f"{name.replace('.', '_')}.log").resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        if enable_json:
            file_handler.setFormatter(StructuredLogFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        file_handler.addFilter(secure_filter)
        logger.addHandler(file_handler)

    return logger


def configure_logging(
    level: str = "INFO",
    enable_console: bool = True,
    enable_json: bool = False,
) -> int:
    """
    Apply logging settings to every zerovault logger.

    Loggers that already exist are updated in place; loggers created
    afterwards by get_secure_logger() start with these settings. File
    handlers are kept.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to output to stderr
        enable_json: Whether to use JSON format

    Returns:
        Number of existing loggers updated
    """
    numeric_level = getattr(logging, level.upper())
    _package_settings.update(
        level=level.upper(),
        enable_console=enable_console,
        enable_json=enable_json,
    )

    updated = 0
    for name, logger in list(logging.root.manager.loggerDict.items()):
        if not isinstance(logger, logging.Logger) or not _in_package(name):
            continue
        # Only loggers built by get_secure_logger carry an explicit level
        if logger.level == logging.NOTSET:
            continue

        logger.setLevel(numeric_level)
        for handler in list(logger.handlers):
            if isinstance(handler, RotatingFileHandler):
                handler.setFormatter(
                    StructuredLogFormatter() if enable_json
                    else logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
                )
            elif isinstance(handler, logging.StreamHandler):
                logger.removeHandler(handler)
        if enable_console:
            logger.addHandler(_console_handler(enable_json, SecureLogFilter()))
        updated += 1

    return updated
