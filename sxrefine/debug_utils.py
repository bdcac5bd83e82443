"""Helper utilities for debugging and logging sxrefine runs."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def is_debug_enabled() -> bool:
    """Return ``True`` if ``SXREFINE_DEBUG`` is set to a truthy value."""
    val = os.environ.get("SXREFINE_DEBUG", "")
    return bool(val) and val.lower() not in {"0", "false", "no"}


def debug_print(*args, **kwargs) -> None:
    """Print only when ``SXREFINE_DEBUG`` is enabled."""
    if is_debug_enabled():
        print(*args, **kwargs)


def configure_logging(level: str = "INFO") -> None:
    """Attach a stderr handler to the ``sxrefine`` logger.

    ``SXREFINE_DEBUG`` forces the level to ``DEBUG``. Calling this more than
    once only adjusts the level.
    """
    if is_debug_enabled():
        level = "DEBUG"
    level_name = str(level).upper()
    numeric = getattr(logging, level_name, None)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger("sxrefine")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(numeric)


def enable_numba_logging(default_level: str = "DEBUG") -> None:
    """Configure the ``numba`` logger when debug mode is active.

    If ``SXREFINE_DEBUG`` is enabled this sets up the ``numba`` logger to
    emit messages using the log level from ``NUMBA_LOG_LEVEL`` if defined
    or ``default_level`` otherwise.
    """
    if not is_debug_enabled():
        return

    level_name = os.environ.get("NUMBA_LOG_LEVEL", default_level).upper()
    os.environ["NUMBA_LOG_LEVEL"] = level_name
    level = getattr(logging, level_name, logging.DEBUG)

    logger = logging.getLogger("numba")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s numba: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)
