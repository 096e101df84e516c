"""
Logging utilities.

WHAT: Application log plus a separate audit trail of offer/transaction transitions
WHY: Operators read the application log; disputes are settled from the audit
     trail, which must not be drowned out by request and SQL noise
HOW: Root logger with console and rotating file handlers; the audit logger
     additionally writes to its own file and still propagates to the root
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from ..core.config import settings

AUDIT_LOGGER_NAME = "marketplace.audit"

_DATEFMT = '%Y-%m-%d %H:%M:%S'


def _rotating_handler(path: Path, level: int, fmt: str) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.LOG_MAX_BYTES,
        backupCount=settings.LOG_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT))
    return handler


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    audit_file: Optional[str] = None,
):
    """
    Configure application and audit logging.

    Arguments override LOG_LEVEL, LOG_FILE and AUDIT_LOG_FILE. Calling it again
    replaces the handlers instead of stacking new ones.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    app_log = Path(log_file or settings.LOG_FILE)
    audit_log = Path(audit_file or settings.AUDIT_LOG_FILE)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s', datefmt=_DATEFMT
    ))
    root_logger.addHandler(console_handler)
    root_logger.addHandler(_rotating_handler(
        app_log, logging.DEBUG,
        '%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(pathname)s:%(lineno)d - %(message)s',
    ))

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()
    audit_logger.addHandler(_rotating_handler(audit_log, logging.INFO, '%(asctime)s %(message)s'))

    # SQL echo goes to the console only while debugging
    if not settings.DEBUG:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized (level={level_name}, file={app_log}, audit={audit_log})")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_audit_logger() -> logging.Logger:
    """Logger for state transitions: one line per committed offer or transaction change."""
    return logging.getLogger(AUDIT_LOGGER_NAME)
