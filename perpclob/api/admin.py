"""
Admin API endpoints.

Start/stop the background engines, force funding for a market and
read funding / liquidation statistics.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .models import (
    EngineToggleResponse,
    EnginesResponse,
    FundingHistoryResponse,
    FundingPaymentModel,
    FundingStatsResponse,
    LiquidationStatsResponse,
    PositionAtRisk,
)
from ..venue.exchange import Venue
from ..venue.types import ErrorCode

router = APIRouter(prefix="/admin", tags=["admin"])


def get_venue(request: Request) -> Venue:
    """Venue attached to the application by create_app."""
    return request.app.state.venue


@router.get("/engines", response_model=EnginesResponse)
async def engine_status(venue: Venue = Depends(get_venue)) -> EnginesResponse:
    """Status of the funding and liquidation jobs."""
    return EnginesResponse(**venue.engine_status())


@router.post("/liquidation/start", response_model=EngineToggleResponse)
def start_liquidation_monitor(venue: Venue = Depends(get_venue)) -> EngineToggleResponse:
    changed = venue.start_liquidation_monitor()
    return EngineToggleResponse(engine="liquidation", is_running=True, changed=changed)


@router.post("/liquidation/stop", response_model=EngineToggleResponse)
def stop_liquidation_monitor(venue: Venue = Depends(get_venue)) -> EngineToggleResponse:
    changed = venue.stop_liquidation_monitor()
    return EngineToggleResponse(engine="liquidation", is_running=False, changed=changed)


@router.post("/funding/start", response_model=EngineToggleResponse)
def start_funding_engine(venue: Venue = Depends(get_venue)) -> EngineToggleResponse:
    changed = venue.start_funding_engine()
    return EngineToggleResponse(engine="funding", is_running=True, changed=changed)


@router.post("/funding/stop", response_model=EngineToggleResponse)
def stop_funding_engine(venue: Venue = Depends(get_venue)) -> EngineToggleResponse:
    changed = venue.stop_funding_engine()
    return EngineToggleResponse(engine="funding", is_running=False, changed=changed)


@router.post("/funding/{market}/trigger", response_model=FundingPaymentModel)
def trigger_funding(market: str, venue: Venue = Depends(get_venue)) -> FundingPaymentModel:
    """
    Force a funding round for one market now.

    404 when the market is unknown, 409 when it is not a perp or no
    price is available.
    """
    payment, error = venue.trigger_funding(market)
    if error == ErrorCode.MARKET_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Market not found: {market}")
    if error == ErrorCode.NOT_A_PERP:
        raise HTTPException(status_code=409, detail=f"{market} is not a perpetual market")
    if error is not None:
        raise HTTPException(status_code=409, detail=f"No price available for {market}")
    return FundingPaymentModel(**payment.to_dict())


@router.get("/funding/stats", response_model=FundingStatsResponse)
async def funding_stats(venue: Venue = Depends(get_venue)) -> FundingStatsResponse:
    return FundingStatsResponse(**venue.funding_stats())


@router.get("/funding/{market}/history", response_model=FundingHistoryResponse)
async def funding_history(
    market: str,
    limit: int = Query(20, ge=1, le=100, description="Max rounds to return"),
    venue: Venue = Depends(get_venue),
) -> FundingHistoryResponse:
    """Funding rounds newest first."""
    if venue.get_market(market) is None:
        raise HTTPException(status_code=404, detail=f"Market not found: {market}")
    return FundingHistoryResponse(
        market=market,
        history=[FundingPaymentModel(**p.to_dict()) for p in venue.funding_history(market, limit)],
    )


@router.get("/liquidation/stats", response_model=LiquidationStatsResponse)
async def liquidation_stats(venue: Venue = Depends(get_venue)) -> LiquidationStatsResponse:
    return LiquidationStatsResponse(**venue.liquidation_stats())


@router.get("/positions/at-risk", response_model=list[PositionAtRisk])
async def positions_at_risk(
    threshold_pct: float | None = Query(None, gt=0, le=100, description="Distance to liquidation in percent"),
    venue: Venue = Depends(get_venue),
) -> list[PositionAtRisk]:
    """Open positions close to liquidation, closest first."""
    return [
        PositionAtRisk(**entry)
        for entry in venue.positions_at_risk(threshold_pct)
    ]
