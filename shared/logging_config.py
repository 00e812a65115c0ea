"""
Logging setup for the realtime relay.
Modules log through logging.getLogger(__name__); this only configures the root.
"""
import logging
from typing import Optional

from .config import settings

_LOG_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_level(name: Optional[str]) -> int:
    """Map a case-insensitive level name to a logging level, INFO on unknown input."""
    if not name:
        return logging.INFO
    return _LOG_LEVELS.get(str(name).upper(), logging.INFO)


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once. Safe to call repeatedly."""
    root = logging.getLogger()
    lvl = resolve_level(level or settings.LOG_LEVEL)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(lvl)
    # httpx logs every request at INFO; too noisy at poll frequency
    logging.getLogger("httpx").setLevel(max(lvl, logging.WARNING))
