"""
Logging configuration for the session core.
Logs are written to stderr so the host application's stdout stays untouched.
"""

import logging
import sys
from pathlib import Path


def setup_logger(
    name: str = "webgen", level: int = logging.INFO, log_file: Path | None = None
) -> logging.Logger:
    """
    Set up a logger that writes to stderr (and optionally a file).

    Args:
        name: Logger name
        level: Logging level (default: INFO)
        log_file: Optional path to log file. If None, only logs to stderr.

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Keep host application loggers free of our records
    logger.propagate = False

    return logger


logger = setup_logger()

__all__ = ["logger", "setup_logger"]
