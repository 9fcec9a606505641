"""Shared logging utilities for the raffle service.

``get_logger(name)`` configures logging lazily on first use from the
LOG_LEVEL and LOG_FILE environment variables. The application entry point
may call ``configure_logging`` earlier with values taken from its config.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Chatty third-party loggers held at WARNING unless LOG_LEVEL is DEBUG.
NOISY_LOGGERS = ('web3', 'urllib3', 'asyncio', 'uvicorn.access')

_configured = False
_log_files: set = set()


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Install the console (and optional file) handler on the root logger.

    Arguments fall back to LOG_LEVEL (default INFO) and LOG_FILE. The first
    call installs the console handler. Later calls apply an explicit
    ``level`` and add a file handler for a ``log_file`` not yet attached,
    which lets settings loaded after import (such as a .env file) take effect.
    """
    global _configured
    root = logging.getLogger()
    if _configured:
        if level:
            _set_level(root, level)
        if log_file:
            _add_file_handler(root, log_file)
        return

    root.addHandler(_handler(logging.StreamHandler()))
    _set_level(root, level or os.getenv('LOG_LEVEL', 'INFO'))
    log_file = log_file or os.getenv('LOG_FILE', '')
    if log_file:
        _add_file_handler(root, log_file)

    _configured = True


def _handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _set_level(root: logging.Logger, level_name: str) -> None:
    log_level = getattr(logging, level_name.upper(), logging.INFO)
    root.setLevel(log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if log_level <= logging.DEBUG else logging.WARNING)


def _add_file_handler(root: logging.Logger, log_file: str) -> None:
    log_path = Path(log_file).resolve()
    if log_path in _log_files:
        return
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_handler(logging.FileHandler(log_path, encoding='utf-8')))
    except OSError:
        root.exception('Cannot write log file %s; logging to console only', log_file)
        return
    _log_files.add(log_path)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger, configuring logging from the environment if needed."""
    configure_logging()
    return logging.getLogger(name)
