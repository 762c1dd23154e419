"""Logging utilities for CLI and pipeline modules."""

from __future__ import annotations

import logging
from pathlib import Path


DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LIBRARY_LOGGERS: tuple[str, ...] = ("hmmlearn",)


def configure_logging(
    log_file: Path,
    level: int = logging.INFO,
    library_level: int = logging.WARNING,
) -> logging.Logger:
    """Configure console and file logging for the ``frigate_hmm`` logger tree.

    Handlers already on the root logger are replaced and closed. hmmlearn
    loggers are held at ``library_level``.
    """

    log_file.parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=DEFAULT_LOG_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
    handlers: list[logging.Handler] = [
        logging.StreamHandler(),
        logging.FileHandler(log_file, encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root_logger.addHandler(handler)

    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logger = logging.getLogger("frigate_hmm")
    logger.setLevel(level)
    logger.debug("logging.configured log_file=%s level=%s", log_file, logging.getLevelName(level))
    return logger
