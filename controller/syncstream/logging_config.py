"""Logging bootstrap for the controller service."""
from __future__ import annotations

from logging.config import dictConfig


def configure_logging(level: str = "INFO") -> None:
    """Apply logging defaults for the controller process."""

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                }
            },
            # frame traffic on the relay socket is far too chatty at DEBUG
            "loggers": {"websockets": {"level": "WARNING"}},
            "root": {"level": level, "handlers": ["console"]},
        }
    )


__all__ = ["configure_logging"]
