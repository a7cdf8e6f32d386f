"""
Utility modules.
"""

from .logger import get_logger, setup_logger, VenueLogger

__all__ = [
    "get_logger",
    "setup_logger",
    "VenueLogger",
]
