"""
Market data endpoints.

Read-only views of markets, books, recent trades and funding.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from .admin import get_venue
from .models import FundingRateInfo, MarketModel, OrderBookResponse
from ..venue.exchange import Venue

router = APIRouter(prefix="/markets", tags=["markets"])


@router.get("", response_model=list[MarketModel])
async def list_markets(venue: Venue = Depends(get_venue)) -> list[MarketModel]:
    return [MarketModel(**m.to_dict()) for m in venue.markets()]


@router.get("/{market}/book", response_model=OrderBookResponse)
async def order_book(
    market: str,
    depth: int = Query(20, ge=1, le=200, description="Levels per side"),
    venue: Venue = Depends(get_venue),
) -> OrderBookResponse:
    snapshot = venue.order_book(market, depth)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Market not found: {market}")
    return OrderBookResponse(**snapshot)


@router.get("/{market}/trades")
async def recent_trades(
    market: str,
    limit: int = Query(50, ge=1, le=500),
    venue: Venue = Depends(get_venue),
) -> list[dict]:
    if venue.get_market(market) is None:
        raise HTTPException(status_code=404, detail=f"Market not found: {market}")
    return [t.to_dict() for t in venue.recent_trades(market, limit)]


@router.get("/{market}/funding", response_model=FundingRateInfo)
async def funding_rate(market: str, venue: Venue = Depends(get_venue)) -> FundingRateInfo:
    info = venue.funding_rate_info(market)
    if info is None:
        raise HTTPException(status_code=404, detail=f"Market not found: {market}")
    return FundingRateInfo(**info)
