"""
Process-wide logging for the import service.

Every module logs through ``logging.getLogger(__name__)``. The console
handler is always installed; a rotating file handler is added when
``LOG_FILE`` is set, so job traces from the background chunk loop survive
the process.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

# Third-party loggers that drown out job progress at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "multipart", "httpx")

_is_configured = False


def build_logging_config(log_level: str, log_file: Optional[str] = None) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": log_level,
        }
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "standard",
            "level": log_level,
            "filename": log_file,
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 3,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"standard": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"}},
        "handlers": handlers,
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        "root": {"handlers": list(handlers), "level": log_level},
    }


def configure_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Install the handlers once per process.

    Args:
        level: Log level name such as "DEBUG" or "INFO". Defaults to INFO.
        log_file: Optional path of a rotating log file.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    dictConfig(build_logging_config(log_level, log_file))
    logging.getLogger("content_import").setLevel(log_level)

    _is_configured = True
