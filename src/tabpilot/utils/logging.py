"""Logging setup for the tabpilot command line and host integrations.

Request payloads carry whole document windows, so they never reach the main
log or the console. They go to their own rotating ``payloads.log``, and only
while payload logging is switched on.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Mapping

__all__ = [
    "PAYLOAD_LOGGER_NAME",
    "get_log_path",
    "get_payload_log_path",
    "log_payload",
    "setup_logging",
]

PAYLOAD_LOGGER_NAME = "tabpilot.payload"

_DEFAULT_LOG_DIR = Path.home() / ".tabpilot" / "logs"
_LOG_FILE_NAME = "tabpilot.log"
_PAYLOAD_FILE_NAME = "payloads.log"
# Wire-level chatter that follows the root level only while payloads are logged.
_TRANSPORT_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai")
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio",)
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_CONFIGURED = False
_LOG_PATH: Path | None = None
_PAYLOAD_LOG_PATH: Path | None = None

_payload_logger = logging.getLogger(PAYLOAD_LOGGER_NAME)


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    log_payloads: bool = False,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure the main log, the optional console and the payload log.

    Args:
        level: Root level for the main log and the console.
        log_dir: Directory for both log files; ``TABPILOT_LOG_DIR`` and then
            ``~/.tabpilot/logs`` are used when omitted.
        console: Also write the main log to stderr.
        log_payloads: Record request payloads in ``payloads.log`` and let the
            HTTP transport loggers follow ``level``.
        force: Reconfigure even when logging was already set up.
    """

    global _CONFIGURED, _LOG_PATH, _PAYLOAD_LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME
    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)

    handlers: list[logging.Handler] = [_rotating_handler(log_path, level, formatter, max_bytes, backup_count)]
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level, verbose_transport=log_payloads)

    payload_path = target_dir / _PAYLOAD_FILE_NAME if log_payloads else None
    _configure_payload_logger(payload_path, formatter, max_bytes, backup_count)

    _CONFIGURED = True
    _LOG_PATH = log_path
    _PAYLOAD_LOG_PATH = payload_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def get_payload_log_path() -> Path | None:
    return _PAYLOAD_LOG_PATH


def log_payload(kind: str, payload: Mapping[str, Any]) -> None:
    """Write ``payload`` as indented JSON to the payload log."""

    if not _payload_logger.isEnabledFor(logging.DEBUG):
        return
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        _payload_logger.debug("%s payload (unserializable): %s", kind, payload)
    else:
        _payload_logger.debug("%s payload:\n%s", kind, serialized)


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("TABPILOT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _rotating_handler(
    path: Path,
    level: int,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_payload_logger(
    path: Path | None,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
) -> None:
    for handler in list(_payload_logger.handlers):
        _payload_logger.removeHandler(handler)
        handler.close()
    _payload_logger.propagate = False
    if path is None:
        _payload_logger.setLevel(logging.WARNING)
        return
    _payload_logger.setLevel(logging.DEBUG)
    _payload_logger.addHandler(_rotating_handler(path, logging.DEBUG, formatter, max_bytes, backup_count))


def _tune_external_loggers(root_level: int, *, verbose_transport: bool) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _QUIET_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
    transport_level = root_level if verbose_transport else quiet_level
    for logger_name in _TRANSPORT_LOGGERS:
        logging.getLogger(logger_name).setLevel(transport_level)
