"""Logging setup for chatstream.

Log records go to a rotating file under ``~/.chatstream/logs``; stderr only
shows warnings unless debug output is requested, since stdout carries the
streamed reply. Every record is stamped with the id of the chat session being
driven (``-`` outside a turn), set through :func:`session_context`, so turns
resumed after tool calls can be followed through the file.
"""

from __future__ import annotations

import contextlib
import logging
import logging.handlers
import os
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

__all__ = [
    "SessionContextFilter",
    "current_session_id",
    "get_log_path",
    "session_context",
    "setup_logging",
]

LOG_FILE_NAME = "chatstream.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(session_id)s | %(name)s | %(message)s"

_DEFAULT_LOG_DIR = Path.home() / ".chatstream" / "logs"
# HTTP stack loggers; their INFO lines are per-request noise outside debug runs.
_TRANSPORT_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai")
_SESSION_ID: ContextVar[str] = ContextVar("chatstream_session_id", default="-")
_CONFIGURED = False
_LOG_PATH: Path | None = None


class SessionContextFilter(logging.Filter):
    """Attach the active session id to each record as ``session_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = _SESSION_ID.get()
        return True


@contextlib.contextmanager
def session_context(session_id: str | None) -> Iterator[None]:
    """Tag records logged inside the block with ``session_id``."""

    token = _SESSION_ID.set(session_id or "-")
    try:
        yield
    finally:
        _SESSION_ID.reset(token)


def current_session_id() -> str:
    return _SESSION_ID.get()


def setup_logging(
    *,
    debug: bool = False,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the file and stderr handlers on the root logger.

    The file receives INFO and above (DEBUG with ``debug``); stderr receives
    WARNING and above (DEBUG with ``debug``). Repeated calls are no-ops unless
    ``force`` is set, which is how the CLI switches to debug output once the
    persisted settings are known.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = Path(log_dir or os.environ.get("CHATSTREAM_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILE_NAME

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context_filter = SessionContextFilter()
    file_level = logging.DEBUG if debug else logging.INFO

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(file_level)
    handlers: list[logging.Handler] = [file_handler]
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
        handlers.append(console_handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logging.basicConfig(level=file_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    transport_level = logging.INFO if debug else logging.WARNING
    for logger_name in _TRANSPORT_LOGGERS:
        logging.getLogger(logger_name).setLevel(transport_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the log file installed by :func:`setup_logging`, if any."""

    return _LOG_PATH
