import logging
import os

from rich.logging import RichHandler

_LOG_LEVEL_ENV = "EPHEMERA_LOG_LEVEL"
_LOG_TIME_ENV = "EPHEMERA_LOG_TIME"


def _resolve_level(level: int | str | None) -> int:
    if level is None:
        level = os.environ.get(_LOG_LEVEL_ENV, "INFO")
    if isinstance(level, str):
        return logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    return level


def get_logger(name: str, *, level: int | str | None = None) -> logging.Logger:
    """Get a logger with a rich handler attached.

    Loggers are only set up once; later calls return the same instance.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    handler = RichHandler(
        show_time=bool(os.environ.get(_LOG_TIME_ENV, False)),
        show_path=False,
        markup=False,
    )
    logger.addHandler(handler)
    logger.setLevel(_resolve_level(level))
    logger.propagate = False
    return logger
