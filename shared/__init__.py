"""
Shared modules for the Amrut realtime relay.
"""
from .config import settings
from .logging_config import setup_logging

__all__ = [
    "settings",
    "setup_logging",
]
