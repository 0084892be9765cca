"""Structured logging for gitstate.

Every backend invocation and reconciliation step logs through the helpers
below so a session's git traffic can be reconstructed from one file. The
``GITSTATE_LOG_*`` variables (usually exported from the ``[logging]`` config
section) pick the level, directory and rotation of that file.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


LOGGER_NAME = "gitstate"

ENV_LOG_DIR = "GITSTATE_LOG_DIR"
ENV_LOG_LEVEL = "GITSTATE_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "GITSTATE_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "GITSTATE_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "GITSTATE_LOG_DISABLE_FILE"

DEFAULT_LOG_DIR = Path.home() / ".gitstate" / "logs"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

LOG_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_logger_initialized = False
_session_start: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _get_log_level() -> int:
    level_name = os.getenv(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def _file_logging_disabled() -> bool:
    return os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in ("1", "true", "yes")


def _get_log_file_path() -> Optional[Path]:
    """``<log dir>/gitstate_<session start>.log``, or None when disabled.

    The session stamp is taken on first use and kept for the process.
    """
    global _session_start
    if _file_logging_disabled():
        return None

    if _session_start is None:
        _session_start = _utcnow().strftime("%Y-%m-%d_%H%M%S")

    log_dir = Path(os.getenv(ENV_LOG_DIR, DEFAULT_LOG_DIR))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"gitstate_{_session_start}.log"


def _rotating_handler(path: Path) -> RotatingFileHandler:
    return RotatingFileHandler(
        str(path),
        maxBytes=int(os.getenv(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES)),
        backupCount=int(os.getenv(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT)),
    )


def _get_logger() -> logging.Logger:
    """The ``gitstate`` logger, configured on first call.

    Records at the configured level go to the session file; stderr only
    sees warnings and errors.
    """
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)
    if _logger_initialized:
        return logger

    _logger_initialized = True
    logger.handlers.clear()
    level = _get_log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers: list[logging.Handler] = []
    log_file = _get_log_file_path()
    if log_file:
        file_handler = _rotating_handler(log_file)
        file_handler.setLevel(level)
        handlers.append(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(max(level, logging.WARNING))
    handlers.append(stream_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    if not fields:
        return message
    return f"{message} " + json.dumps(fields, separators=(",", ":"), sort_keys=True, default=str)


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """One JSON line: ``ts``, ``action`` (e.g. "engine.status"), ``outcome``,
    ``duration_ms`` when timed, then any extra ``fields``."""
    payload: Dict[str, Any] = {
        "ts": _utcnow().isoformat(),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if fields:
        payload.update(fields)

    _get_logger().info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))


def log_debug(message: str, **fields: Any) -> None:
    # Fields are serialized only when DEBUG is enabled.
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_info(message: str, **fields: Any) -> None:
    _get_logger().info(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any):
    """Log ``action`` with its duration when the block exits.

    Exceptions are logged with outcome="error" and re-raised. Keys put into
    the yielded dict are added to the ok line (result counts and the like).
    """
    start = time.perf_counter()
    result_info: Dict[str, Any] = {}
    try:
        yield result_info
    except Exception:
        duration_ms = (time.perf_counter() - start) * 1000.0
        log_action(action, outcome="error", duration_ms=duration_ms, **fields)
        raise
    duration_ms = (time.perf_counter() - start) * 1000.0
    log_action(action, outcome="ok", duration_ms=duration_ms, **{**fields, **result_info})
