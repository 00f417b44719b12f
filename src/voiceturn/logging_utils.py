#!/usr/bin/env python3
"""
Logging setup shared by the VoiceTurn modules.

setup_logger(name, logfile) attaches a rotating file handler and a console
handler once per logger. Output format and level follow the environment:

    VOICETURN_LOG_DIR     directory for relative log files
    VOICETURN_LOG_FORMAT  "text" (default) or "json"
    VOICETURN_LOG_LEVEL   DEBUG, INFO, WARNING, ...

Records carrying session_id/turn_id (see log_with_context) show them in both
formats, so a conversation can be followed turn by turn.
"""
from __future__ import annotations

import logging
import os
import json
import uuid
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    'message', 'asctime', 'request_id', 'error_details',
}

_TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _resolve_logfile(logfile: str) -> str:
    """Relocate relative log files under VOICETURN_LOG_DIR when it is set."""
    log_dir = os.environ.get("VOICETURN_LOG_DIR")
    if log_dir and not os.path.isabs(logfile):
        return os.path.join(log_dir, os.path.basename(logfile))
    return logfile


def _env_level(default: int) -> int:
    name = os.environ.get("VOICETURN_LOG_LEVEL", "").strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def _env_structured() -> bool:
    return os.environ.get("VOICETURN_LOG_FORMAT", "").strip().lower() == "json"


def setup_logger(name: str, logfile: str, level: Optional[int] = None,
                 structured: Optional[bool] = None) -> logging.Logger:
    """Create or return a configured logger with rotating file + console handlers.

    Args:
        name: Logger name
        logfile: Log file path, relocated under VOICETURN_LOG_DIR if relative
        level: Log level; defaults to VOICETURN_LOG_LEVEL, then INFO
        structured: JSON output; defaults to VOICETURN_LOG_FORMAT == "json"
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(_env_level(logging.INFO) if level is None else level)
    if structured is None:
        structured = _env_structured()
    logfile = _resolve_logfile(logfile)

    try:
        logdir = os.path.dirname(logfile)
        if logdir and not os.path.exists(logdir):
            os.makedirs(logdir, exist_ok=True)
    except OSError:
        pass

    fmt = JSONFormatter() if structured else TurnFormatter(_TEXT_FORMAT)

    try:
        fh = RotatingFileHandler(logfile, maxBytes=2_000_000, backupCount=3)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        # console only when the log file cannot be opened
        pass

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


class TurnFormatter(logging.Formatter):
    """Text formatter that suffixes the session and turn a record belongs to"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        session_id = getattr(record, 'session_id', None)
        turn_id = getattr(record, 'turn_id', None)
        if session_id is None and turn_id is None:
            return line
        return f"{line} [{session_id or '-'} turn {turn_id if turn_id is not None else '-'}]"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with turn context and any other extras"""

    def __init__(self, include_request_id: bool = True):
        super().__init__()
        self.include_request_id = include_request_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if self.include_request_id and hasattr(record, 'request_id'):
            log_entry['request_id'] = record.request_id

        if getattr(record, 'error_details', None):
            log_entry['error_details'] = record.error_details

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def log_with_context(logger: logging.Logger, level: int, message: str, **context) -> None:
    """Log message with turn context (turn_id, session_id, from_state, ...)"""
    if not logger.isEnabledFor(level):
        return

    context.setdefault('request_id', str(uuid.uuid4())[:8])
    logger.log(level, message, extra=context)


__all__ = ["setup_logger", "TurnFormatter", "JSONFormatter", "log_with_context"]
