"""
Configuration: environment settings, constants and market definitions.
"""

from .config import Config, get_config
from .constants import validate_symbol, validate_symbols

__all__ = [
    "Config",
    "get_config",
    "validate_symbol",
    "validate_symbols",
]
