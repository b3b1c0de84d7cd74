"""Idempotent stderr logging setup for the server and CLI."""

from __future__ import annotations

import logging
import sys

_CONFIGURED = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# uvicorn logs one line per request; the security middleware already sees them
_NOISY_LOGGERS = ("uvicorn.access",)


def resolve_level(level: int | str) -> int:
    """Accept either a logging constant or a name like "debug"."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logging(level: int | str = logging.INFO, quiet_access: bool = False) -> None:
    """Route the ``vigil`` logger tree to stderr. Safe to call multiple times."""
    global _CONFIGURED  # noqa: PLW0603
    if _CONFIGURED:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger("vigil")
    logger.setLevel(resolve_level(level))
    logger.addHandler(handler)
    logger.propagate = False

    if quiet_access:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    _CONFIGURED = True
