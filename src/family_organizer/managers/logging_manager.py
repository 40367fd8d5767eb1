"""
Centralized logging manager for the family organizer.

Every component obtains its logger through get_logger(), optionally with a
component prefix such as "[FamilyManager]". Handlers live on the application
logger; prefixed loggers are children that propagate to it, so a prefix is
applied once per record and never leaks into another component's output.

Handlers:
- Console (stdout) StreamHandler, always attached.
- FileHandler when LOG_FILE is configured.
- LokiLoggerHandler when LOKI_ENABLED is set. If the handler cannot be
  created (bad URL, network setup failure) the error is logged and the
  application keeps logging to the console.

Usage:
    logger = get_logger(prefix="[TodoManager]")
    logger.info("Todo %s created", todo_id, extra={"user_id": actor_id})
"""

import logging
import os
import sys

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from family_organizer.config import settings

APP_LOGGER_NAME: str = "Family_Organizer"
LOG_LEVEL: str = os.getenv("LOG_LEVEL", settings.LOG_LEVEL).upper()
LOKI_TAGS: dict[str, str] = {
    "app": os.getenv("APP_NAME", settings.APP_NAME),
    "env": os.getenv("ENV", settings.ENV),
}
LOG_FORMAT: str = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Args:
        logger: The logger instance to check and modify
        formatter: The formatter to apply to the StreamHandler

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return True


def _ensure_file_handler(logger: logging.Logger, formatter: logging.Formatter, log_file: str) -> bool:
    """Attach a FileHandler for log_file unless one already writes there."""
    target = os.path.abspath(log_file)
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == target for h in logger.handlers
    ):
        return False

    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)
    file_handler = logging.FileHandler(target)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return True


def _ensure_loki_handler(logger: logging.Logger) -> bool:
    """Attach the Loki handler once. Returns True when a handler was added."""
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return False
    try:
        loki_handler = LokiLoggerHandler(
            url=settings.LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=settings.LOKI_COMPRESS,
        )
    except (OSError, ValueError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler: %s. Console logging only.", e, exc_info=True)
        return False
    logger.addHandler(loki_handler)
    return True


class PrefixFilter(logging.Filter):
    """Prepend a component prefix to each record's message exactly once."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _configure_app_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)

    if _ensure_console_handler(logger, formatter):
        logger.debug("[LoggingManager] Console StreamHandler attached to logger '%s'", name)

    if settings.LOG_FILE and _ensure_file_handler(logger, formatter, settings.LOG_FILE):
        logger.debug("[LoggingManager] FileHandler attached to logger '%s' (%s)", name, settings.LOG_FILE)

    if settings.LOKI_ENABLED and _ensure_loki_handler(logger):
        logger.info(
            "[LoggingManager] LokiLoggerHandler attached to logger '%s' (url=%s, labels=%s)",
            name,
            settings.LOKI_URL,
            LOKI_TAGS,
        )
    return logger


def get_logger(name: str = APP_LOGGER_NAME, prefix: str = "") -> logging.Logger:
    """
    Return a configured logger.

    Args:
        name: Application logger name; handlers are attached here.
        prefix: Optional component prefix, e.g. "[FamilyManager]".

    Returns:
        logging.Logger: The application logger, or a prefixed child of it.
    """
    app_logger = _configure_app_logger(name)
    if not prefix:
        return app_logger

    child_name = prefix.strip("[] ").replace(" ", "_") or "component"
    child = app_logger.getChild(child_name)
    if not any(isinstance(f, PrefixFilter) for f in child.filters):
        child.addFilter(PrefixFilter(prefix))
    return child
