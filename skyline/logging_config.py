# -*- coding: utf-8 -*-
"""Logging for Skyline: a rotating file in the config directory plus errors on stderr.

Access and refresh tokens must never reach the log file, so every handler
carries a TokenRedactingFilter that masks bearer tokens and JWTs in the
rendered message.
"""

import logging
import logging.handlers
import os
import re
import sys
from typing import Optional

LOGGER_NAME = 'skyline'
LOG_FILE_NAME = 'skyline.log'
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

# Third-party loggers that are chatty at DEBUG; quiet unless debug logging is on
LIBRARY_LOGGERS = ('urllib3',)

REDACTED = '[redacted]'
_BEARER_RE = re.compile(r'(Bearer\s+)[A-Za-z0-9._~+/=-]+', re.IGNORECASE)
# Session tokens are JWTs: three base64url segments, the header starting with eyJ
_JWT_RE = re.compile(r'eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*')


def redact_tokens(text: str) -> str:
    """Mask bearer tokens and JWTs in `text`."""
    text = _BEARER_RE.sub(lambda m: m.group(1) + REDACTED, text)
    return _JWT_RE.sub(REDACTED, text)


class TokenRedactingFilter(logging.Filter):
    """Rewrites each record's message with session tokens masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_tokens(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _file_level(debug: bool) -> int:
    return logging.DEBUG if debug else logging.INFO


def _apply_levels(logger: logging.Logger, debug: bool) -> None:
    for handler in logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            handler.setLevel(_file_level(debug))
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)


def setup_logging(config_dir: str, debug: bool = False) -> logging.Logger:
    """Initialize application-wide logging.

    Args:
        config_dir: Directory to store log files
        debug: If True, the log file gets DEBUG records and library loggers
               are let through; otherwise INFO and library warnings only

    Returns:
        The 'skyline' logger
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Re-initialization replaces the previous handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)
    redactor = TokenRedactingFilter()

    os.makedirs(config_dir, exist_ok=True)
    log_file = os.path.join(config_dir, LOG_FILE_NAME)
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(redactor)
        logger.addHandler(file_handler)
    except OSError as e:
        print(f"Warning: Could not create log file {log_file}: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.ERROR)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    console_handler.addFilter(redactor)
    logger.addHandler(console_handler)

    logger.propagate = False
    _apply_levels(logger, debug)

    logger.info(f"Logging initialized (debug={debug})")
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Optional name for a child logger (e.g. 'client' gives
              'skyline.client'). If None, returns the main skyline logger.
    """
    if name:
        return logging.getLogger(f'{LOGGER_NAME}.{name}')
    return logging.getLogger(LOGGER_NAME)


def set_debug_mode(enabled: bool) -> None:
    """Switch file and library log levels at runtime."""
    logger = logging.getLogger(LOGGER_NAME)
    _apply_levels(logger, enabled)
    logger.info(f"Debug logging {'enabled' if enabled else 'disabled'}")
