"""
Logging configuration shared by the API process and the Celery worker.
"""

import logging
import logging.config
import sys

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def setup_logging(level: str | None = None) -> None:
    """Install the root handler once per process; later calls only adjust the level."""
    global _configured

    level = (level or settings.LOG_LEVEL).upper()
    if _configured:
        logging.getLogger().setLevel(level)
        return

    handlers = ["default"]
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "plain": {"format": LOG_FORMAT},
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": sys.stdout,
                    "formatter": "plain",
                }
            },
            "root": {"level": level, "handlers": handlers},
            "loggers": {
                "uvicorn": {"handlers": handlers, "level": level, "propagate": False},
                "uvicorn.access": {"handlers": handlers, "level": level, "propagate": False},
                "celery": {"handlers": handlers, "level": level, "propagate": False},
                # Provider SDKs log every HTTP request at INFO
                "httpx": {"level": "WARNING"},
            },
        }
    )
    _configured = True
