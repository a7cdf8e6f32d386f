"""
Market definitions loaded from YAML.

File layout:

    defaults:            # optional, merged into every market
      quote_asset: USDC
    markets:
      - symbol: BTC-PERP
        base_asset: BTC
        tick_size: 0.5
        ...

Every field of Market may be given; unknown keys and inconsistent
risk parameters fail loud with ValueError.
"""

from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from .constants import validate_symbol
from ..venue.types import EPSILON, Market, MarketKind, MarketStatus


_NUMERIC_FIELDS = (
    "tick_size", "lot_size", "min_order_size", "max_order_size", "max_leverage",
    "initial_margin_rate", "maintenance_margin_rate", "maker_fee_rate",
    "taker_fee_rate", "funding_interval_hours", "funding_rate",
)

_KNOWN_FIELDS = set(_NUMERIC_FIELDS) | {
    "symbol", "name", "kind", "base_asset", "quote_asset", "oracle_price", "status",
}


def parse_market(raw: Dict[str, Any]) -> Market:
    """
    Build and validate a Market from a raw mapping.

    Raises:
        ValueError: If the definition is incomplete or inconsistent
    """
    unknown = set(raw) - _KNOWN_FIELDS
    if unknown:
        raise ValueError(f"Unknown market fields: {sorted(unknown)}")
    if "symbol" not in raw:
        raise ValueError("Market definition requires 'symbol'")

    symbol = validate_symbol(str(raw["symbol"]))
    values: Dict[str, Any] = {"symbol": symbol}
    for key in _NUMERIC_FIELDS:
        if key in raw:
            values[key] = float(raw[key])
    values["name"] = str(raw.get("name", symbol))
    values["base_asset"] = str(raw.get("base_asset", symbol.split("-")[0]))
    values["quote_asset"] = str(raw.get("quote_asset", "USDC"))
    values["kind"] = MarketKind(str(raw.get("kind", "perp")).lower())
    values["status"] = MarketStatus(str(raw.get("status", "active")).lower())
    if raw.get("oracle_price") is not None:
        values["oracle_price"] = float(raw["oracle_price"])

    market = Market(**values)
    validate_market(market)
    return market


def validate_market(market: Market) -> None:
    """Check risk parameters for consistency."""
    for key in ("tick_size", "lot_size", "min_order_size", "max_order_size", "max_leverage"):
        if getattr(market, key) <= 0:
            raise ValueError(f"{market.symbol}: {key} must be > 0")
    if market.min_order_size > market.max_order_size:
        raise ValueError(f"{market.symbol}: min_order_size exceeds max_order_size")
    if not 0 < market.maintenance_margin_rate < market.initial_margin_rate <= 1:
        raise ValueError(
            f"{market.symbol}: expected 0 < maintenance_margin_rate < "
            f"initial_margin_rate <= 1, got {market.maintenance_margin_rate} / "
            f"{market.initial_margin_rate}"
        )
    if market.is_perp and market.initial_margin_rate < 1 / market.max_leverage - EPSILON:
        raise ValueError(
            f"{market.symbol}: initial_margin_rate {market.initial_margin_rate} is below "
            f"1 / max_leverage ({1 / market.max_leverage:.6g})"
        )
    if market.maker_fee_rate < 0 or market.taker_fee_rate < 0:
        raise ValueError(f"{market.symbol}: fee rates must be >= 0")
    if market.funding_interval_hours <= 0:
        raise ValueError(f"{market.symbol}: funding_interval_hours must be > 0")


def load_markets(path: Union[str, Path]) -> List[Market]:
    """
    Load market definitions from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is empty or a definition is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Markets file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if not raw or not raw.get("markets"):
        raise ValueError(f"Empty or invalid YAML in {config_path}")

    defaults = raw.get("defaults", {}) or {}
    markets = [parse_market({**defaults, **entry}) for entry in raw["markets"]]

    symbols = [m.symbol for m in markets]
    duplicates = sorted({s for s in symbols if symbols.count(s) > 1})
    if duplicates:
        raise ValueError(f"Duplicate market symbols in {config_path}: {duplicates}")

    return markets
