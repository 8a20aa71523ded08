"""Logging configuration and utilities."""

import logging
import sys

import structlog
import colorlog
from structlog.typing import Processor


# LOG_LEVEL accepts the short "warn" spelling used by the archive server tooling
_LEVEL_ALIASES = {
    "warn": "WARNING",
    "warning": "WARNING",
    "debug": "DEBUG",
    "info": "INFO",
    "error": "ERROR",
}


def resolve_level(level: str) -> int:
    """Map a LOG_LEVEL value to a stdlib logging level."""
    name = _LEVEL_ALIASES.get(level.strip().lower(), level.strip().upper())
    return getattr(logging, name, logging.INFO)


def setup_logging(log_level: str = "info", verbose: bool = False) -> None:
    """Set up structured logging on top of the standard library."""
    level = logging.DEBUG if verbose else resolve_level(log_level)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    setup_console_logging(level)


def setup_console_logging(level: int) -> None:
    """Set up colored console logging on stderr.

    stdout is reserved for the run summary.
    """
    root = logging.getLogger()
    root.setLevel(level)

    for handler in list(root.handlers):
        if getattr(handler, "_collector_console", False):
            root.removeHandler(handler)

    console_handler = colorlog.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler._collector_console = True

    console_formatter = colorlog.ColoredFormatter(
        "%(log_color)s%(message)s",
        reset=True,
        log_colors={
            'DEBUG': 'cyan',
            'INFO': 'green',
            'WARNING': 'yellow',
            'ERROR': 'red',
            'CRITICAL': 'red,bg_white',
        }
    )
    console_handler.setFormatter(console_formatter)
    root.addHandler(console_handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_async_execution_time(func):
    """Decorator to log async function execution time."""
    import time
    import functools

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        logger = get_logger(func.__name__)
        start_time = time.time()

        try:
            result = await func(*args, **kwargs)
            execution_time = time.time() - start_time
            logger.debug(
                "Async function executed successfully",
                function=func.__name__,
                execution_time=f"{execution_time:.4f}s"
            )
            return result
        except Exception as e:
            execution_time = time.time() - start_time
            logger.error(
                "Async function execution failed",
                function=func.__name__,
                execution_time=f"{execution_time:.4f}s",
                error=str(e)
            )
            raise

    return wrapper
