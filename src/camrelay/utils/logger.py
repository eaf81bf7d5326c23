"""
Logging utilities for CamRelay.

All modules log through loguru. Standard library loggers used by uvicorn and
asyncssh are redirected into loguru so the console shows a single stream.
"""

import logging
import sys
import traceback

from loguru import logger as _logger

from camrelay.models.enums import LogLevel

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_LEVEL_MAP = {
    LogLevel.FULL: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
}

# Third-party stdlib loggers that are routed into loguru
_INTERCEPTED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "asyncssh")

_logger.configure(extra={"name": "camrelay"})


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.bind(name=record.name).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def get_logger(name: str):
    """Get a logger bound to a module name."""
    return _logger.bind(name=name)


def configure_logging(level: LogLevel = LogLevel.INFO, log_file: str = "") -> None:
    """
    Install loguru sinks and redirect stdlib logging.

    Must be called before uvicorn starts, otherwise uvicorn installs its own
    handlers.

    Args:
        level: CamRelay log level.
        log_file: Optional file sink path (rotated at 10 MB).
    """
    loguru_level = _LEVEL_MAP.get(level, "INFO")
    backtrace = level == LogLevel.FULL

    _logger.remove()
    _logger.add(
        sys.stderr,
        level=loguru_level,
        format=LOG_FORMAT,
        backtrace=backtrace,
        diagnose=backtrace,
    )
    if log_file:
        _logger.add(
            log_file,
            level=loguru_level,
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            backtrace=backtrace,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _INTERCEPTED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    # asyncssh logs every channel open at INFO
    if level not in (LogLevel.FULL, LogLevel.DEBUG):
        logging.getLogger("asyncssh").setLevel(logging.WARNING)


def format_traceback(exc: BaseException) -> str:
    """Render an exception's traceback as a string."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
