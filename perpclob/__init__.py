"""
Perp CLOB - simulated perpetual futures venue.

Central limit order book with price-time priority matching, a margin
ledger, positions with liquidation prices, periodic funding and a
liquidation monitor. Balances are quoted in USDC.
"""

__version__ = "1.0.0"
