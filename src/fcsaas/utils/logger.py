"""
Logging setup for the firecracker-saas control plane.

All modules log through loguru. ``get_logger(__name__)`` returns a logger
bound with the module name so records can be filtered per component, and
``configure_logging`` installs the sinks once at process start (CLI or
server entry point). Standard library logging (uvicorn, httpx) is routed
into loguru by an intercept handler.
"""

import inspect
import logging
import sys
import traceback

from loguru import logger as _logger

from fcsaas.models.enums import LogLevel


_FORMAT = (
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

_logger.configure(extra={"name": "fcsaas"})


class _InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        _logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging(level: LogLevel | str = LogLevel.INFO, log_file: str = "") -> None:
    """
    Install loguru sinks and intercept standard library logging.

    Args:
        level: Verbosity level (LogLevel or its string value).
        log_file: Optional file path for an additional rotating sink.
    """
    if isinstance(level, str):
        level = LogLevel(level.lower())
    loguru_level = _LEVEL_MAP.get(level, "INFO")

    _logger.remove()
    _logger.add(
        sys.stderr,
        level=loguru_level,
        format=_FORMAT,
        backtrace=level == LogLevel.FULL,
        diagnose=level == LogLevel.FULL,
    )
    if log_file:
        _logger.add(
            log_file,
            level=loguru_level,
            format=_FORMAT,
            rotation="50 MB",
            retention=5,
            enqueue=True,
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "httpx"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [_InterceptHandler()]
        std_logger.propagate = False


def get_logger(name: str):
    """Get a loguru logger bound to a component name."""
    return _logger.bind(name=name)


def format_traceback(exc: BaseException) -> str:
    """Render an exception with its traceback as a string."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
