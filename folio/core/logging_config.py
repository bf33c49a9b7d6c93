"""
Logging setup for the API process and its import workers.

Row workers run on pool threads named ``book-import-row-N`` and jobs on
``book-import-job-N``, so the thread name is part of every line.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Dict, Optional


_is_configured = False

# Library loggers that are too chatty at INFO while rows are being saved.
QUIET_LOGGERS: Dict[str, str] = {
    "sqlalchemy.engine": "WARNING",
    "sqlalchemy.pool": "WARNING",
    "uvicorn.access": "WARNING",
}


def configure_logging(level: Optional[str] = None, import_level: Optional[str] = None) -> None:
    """
    Install the console handler once per process.

    Args:
        level: Root level, e.g. "INFO".
        import_level: Level for ``folio.domain.imports``; defaults to ``level``.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    pipeline_level = (import_level or log_level).upper()

    loggers = {name: {"level": quiet_level} for name, quiet_level in QUIET_LOGGERS.items()}
    loggers["folio"] = {"level": log_level}
    loggers["folio.domain.imports"] = {"level": pipeline_level}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "pipeline": {
                    "format": "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
                    "datefmt": "%H:%M:%S",
                }
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "pipeline",
                }
            },
            "loggers": loggers,
            "root": {"handlers": ["stdout"], "level": log_level},
        }
    )
    logging.getLogger(__name__).debug("Logging configured (root=%s, imports=%s)", log_level, pipeline_level)

    _is_configured = True
