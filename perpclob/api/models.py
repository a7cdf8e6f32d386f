"""
Pydantic models for admin API responses.
"""

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    status: str = "ok"
    service: str = "perpclob"
    markets: list[str] = Field(default_factory=list)


class EngineToggleResponse(BaseModel):
    """Result of a start/stop request."""

    engine: str
    is_running: bool
    changed: bool


class EngineStatus(BaseModel):
    """Background job status."""

    name: str
    is_running: bool
    interval_seconds: float
    runs: int = 0
    failures: int = 0
    last_run_at: str | None = None


class EnginesResponse(BaseModel):
    """Response for GET /api/admin/engines."""

    funding: EngineStatus
    liquidation: EngineStatus


class FundingStatsResponse(BaseModel):
    """Funding engine statistics."""

    total_funding_processed: int
    total_payments_distributed: float
    total_margin_forfeited: float
    last_funding_at: str | None = None
    is_running: bool


class LiquidationStatsResponse(BaseModel):
    """Liquidation monitor statistics."""

    total_liquidations: int
    total_value_liquidated: float
    total_bad_debt: float
    last_liquidation_at: str | None = None
    is_running: bool


class FundingPaymentModel(BaseModel):
    """One settled funding round."""

    market: str
    funding_rate: float
    mark_price: float
    index_price: float | None = None
    long_payment: float
    short_payment: float
    total_long_size: float
    total_short_size: float
    positions_count: int
    timestamp: str


class FundingHistoryResponse(BaseModel):
    """Response for GET /api/admin/funding/{market}/history."""

    market: str
    history: list[FundingPaymentModel]


class FundingRateInfo(BaseModel):
    """Current and predicted funding for a market."""

    market: str
    funding_rate: float
    predicted_funding_rate: float
    annualized_rate: float
    mark_price: float | None = None
    index_price: float | None = None
    funding_interval_hours: float
    next_funding_time: str | None = None


class BookLevelModel(BaseModel):
    """Aggregated price level."""

    price: float
    quantity: float
    order_count: int
    total: float


class OrderBookResponse(BaseModel):
    """Order book snapshot."""

    market: str
    bids: list[BookLevelModel]
    asks: list[BookLevelModel]
    best_bid: float | None = None
    best_ask: float | None = None
    spread: float | None = None
    updated_at: str | None = None


class MarketModel(BaseModel):
    """Market definition."""

    symbol: str
    name: str
    kind: str
    base_asset: str
    quote_asset: str
    tick_size: float
    lot_size: float
    min_order_size: float
    max_order_size: float
    max_leverage: float
    initial_margin_rate: float
    maintenance_margin_rate: float
    maker_fee_rate: float
    taker_fee_rate: float
    funding_interval_hours: float
    funding_rate: float
    next_funding_time: str | None = None
    oracle_price: float | None = None
    status: str


class PositionAtRisk(BaseModel):
    """Open position near its liquidation price."""

    position_id: str
    market: str
    owner: str
    side: str
    size: float
    entry_price: float
    margin: float
    liquidation_price: float
    mark_price: float
    distance_pct: float
    unrealized_pnl: float
