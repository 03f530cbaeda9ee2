from __future__ import annotations

import logging
import os
import sys

ROOT_LOGGER_NAME = "rota"
LOG_LEVEL_ENV = "ROTA_LOG_LEVEL"


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach a single stdout handler to the ``rota`` logger tree."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    resolved = level if level is not None else os.environ.get(LOG_LEVEL_ENV, "INFO")
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.strip().upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    logger.setLevel(resolved)

    # Prevent duplicate handlers if configured multiple times
    if not logger.handlers:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(stream_handler)
    return logger


def get_logger(module_name: str) -> logging.Logger:
    """Return a child of the ``rota`` logger named after the calling module."""
    name = (module_name or "").strip()
    if not name or name == "__main__":
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
