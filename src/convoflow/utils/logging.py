"""Logging setup that tags every record with the conversation turn it belongs to.

Turns run as separate asyncio tasks, so the active request id lives in a
:class:`contextvars.ContextVar`; :func:`request_context` binds it for the
duration of a turn and :class:`RequestIdFilter` copies it onto records.
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..services.settings import Settings

__all__ = [
    "RequestIdFilter",
    "current_request_id",
    "get_log_path",
    "request_context",
    "setup_logging",
]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(request_id)s | %(name)s | %(message)s"
NO_REQUEST = "-"

_DEFAULT_LOG_DIR = Path.home() / ".convoflow" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
_REQUEST_ID: contextvars.ContextVar[str | None] = contextvars.ContextVar("convoflow_request_id", default=None)
_CONFIGURED = False
_LOG_PATH: Path | None = None


# -----------------------------------------------------------------------------
# Turn context
# -----------------------------------------------------------------------------


def current_request_id() -> str | None:
    """Request id of the turn running in the current task, if any."""
    return _REQUEST_ID.get()


@contextmanager
def request_context(request_id: str) -> Iterator[None]:
    """Attribute log records emitted inside the block to ``request_id``."""
    token = _REQUEST_ID.set(request_id)
    try:
        yield
    finally:
        _REQUEST_ID.reset(token)


class RequestIdFilter(logging.Filter):
    """Adds ``record.request_id``; records outside a turn get ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = _REQUEST_ID.get() or NO_REQUEST
        return True


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------


def setup_logging(
    level: int | None = None,
    *,
    settings: "Settings | None" = None,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (and optionally stderr) on the root logger.

    Args:
        level: Explicit level. When omitted, ``DEBUG`` is used if
            ``settings.debug_logging`` is on and ``INFO`` otherwise.
        settings: Engine settings consulted for the default level.
        log_dir: Directory for ``convoflow.log``; ``CONVOFLOW_LOG_DIR`` or
            ``~/.convoflow/logs`` when omitted.
        console: Also log to stderr.
        max_bytes: Rotation threshold of the log file.
        backup_count: Rotated files to keep.
        force: Reconfigure even if logging was already set up.

    Returns:
        The path of the active log file.
    """
    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    if level is None:
        level = logging.DEBUG if settings is not None and settings.debug_logging else logging.INFO

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "convoflow.log"

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    request_filter = RequestIdFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(request_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""
    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("CONVOFLOW_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
