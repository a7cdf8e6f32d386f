"""
Centralized constants for the venue.

Market symbols are always passed explicitly. No function has a default market.
"""

from typing import List


# ==================== Funding ====================

# Per-interval funding rate bounds
FUNDING_RATE_CAP = 0.01
FUNDING_RATE_FLOOR = -0.01

# Fraction of the mark/index premium charged per interval
FUNDING_DAMPENER = 0.1

# Mark price blend when both book mid and index are known
MARK_MID_WEIGHT = 0.7
MARK_INDEX_WEIGHT = 0.3

FUNDING_RATE_DECIMALS = 6
FUNDING_HISTORY_SIZE = 100


# ==================== Scheduling ====================

DEFAULT_FUNDING_CHECK_SECONDS = 60.0
DEFAULT_LIQUIDATION_CHECK_SECONDS = 5.0


# ==================== Book ====================

DEFAULT_BOOK_DEPTH = 20


# ==================== Risk ====================

# Distance (percent of price) under which a position is reported at risk
DEFAULT_AT_RISK_THRESHOLD_PCT = 10.0


def validate_symbol(symbol: str) -> str:
    """
    Validate and normalize a market symbol.

    Args:
        symbol: The symbol to validate (e.g., "btc-perp", "BTC/USDC")

    Returns:
        Normalized symbol (uppercase, slashes replaced by dashes)

    Raises:
        ValueError: If symbol is empty or invalid
    """
    if not symbol:
        raise ValueError("Market symbol is required - it must be explicitly provided")

    normalized = symbol.strip().upper().replace("/", "-")

    if not normalized or " " in normalized:
        raise ValueError(f"Invalid market symbol: '{symbol}'")

    return normalized


def validate_symbols(symbols: List[str]) -> List[str]:
    """
    Validate and normalize a list of market symbols.

    Raises:
        ValueError: If the list is empty or contains invalid symbols
    """
    if not symbols:
        raise ValueError("At least one market symbol is required")

    return [validate_symbol(s) for s in symbols]
