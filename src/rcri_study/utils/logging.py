"""
Consistent logging setup for the validation study.

USAGE PATTERN:
    - CLI entrypoints: call setup_logger() to attach console/file handlers
    - Library modules: use logging.getLogger(__name__) directly (no handlers)
"""

import logging
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(message)s"


def setup_logger(
    name: str = "rcri_study",
    level: int = logging.INFO,
    log_file: Path | None = None,
    format_string: str | None = None,
) -> logging.Logger:
    """
    Setup a logger with console and optional file output.

    Args:
        name: Logger name (typically "rcri_study" for the CLI)
        level: Logging level (default: INFO)
        log_file: Optional path to log file (appended to)
        format_string: Custom format string (default: timestamp + level + message)

    Returns:
        Configured logger instance with handlers attached
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    # Child loggers propagate to this one; stop here to avoid duplicate output
    logger.propagate = False

    formatter = logging.Formatter(format_string or LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file is not None:
        add_file_handler(logger, log_file, level=level, format_string=format_string)

    return logger


def add_file_handler(
    logger: logging.Logger,
    log_file: str | Path,
    level: int | None = None,
    format_string: str | None = None,
) -> logging.FileHandler:
    """Attach an appending file handler to an already configured logger."""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(log_file, mode="a")
    handler.setLevel(level if level is not None else logger.level)
    handler.setFormatter(
        logging.Formatter(format_string or LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(handler)
    return handler


def remove_file_handler(logger: logging.Logger, handler: logging.Handler) -> None:
    handler.close()
    logger.removeHandler(handler)


def log_section(logger: logging.Logger, title: str, width: int = 80, char: str = "="):
    """Log a section header."""
    logger.info(char * width)
    logger.info(title)
    logger.info(char * width)
