"""Logging configuration for vmsandbox.

Application loggers follow the configured level while chatty third-party
libraries (HTTP clients, the filesystem observer, the ASGI server) are
held at WARNING.
"""

import logging
import sys
from typing import Literal

from vmsandbox.settings import get_settings

# List of noisy third-party loggers to suppress
NOISY_LOGGERS = [
    "httpcore",
    "httpx",
    "asyncio",
    "watchdog",
    "watchdog.observers",
    "watchdog.observers.inotify_buffer",
    "uvicorn.access",
    "multipart",
    "python_multipart",
]

# Per-logger levels for noisy libraries
NOISY_LOGGER_LEVELS = {
    "watchdog.observers.inotify_buffer": logging.ERROR,
}


def suppress_noisy_loggers() -> None:
    """Suppress noisy third-party loggers.

    Call this after importing libraries that configure their own logging.
    """
    for logger_name in NOISY_LOGGERS:
        logger = logging.getLogger(logger_name)
        level = NOISY_LOGGER_LEVELS.get(logger_name, logging.WARNING)
        logger.setLevel(level)
        logger.handlers.clear()


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
) -> None:
    """Configure application logging.

    Sets up logging with:
    - Application logs at configured level
    - Third-party library logs suppressed to WARNING+
    - Clean console output format on stderr, leaving stdout to the VM console

    Args:
        level: Override log level (defaults to settings.log_level or INFO)
    """
    settings = get_settings()
    log_level = level or getattr(settings, "log_level", "INFO")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, log_level))
    formatter = logging.Formatter(
        "%(levelname)s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("vmsandbox").setLevel(getattr(logging, log_level))

    suppress_noisy_loggers()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
