"""
Markets API Routes

Manage the markets the AI trading loop monitors.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from api.deps import get_runtime
from models.database import model_to_dict
from services.runtime import TradingRuntime
from services.trading_loop import MarketAlreadyMonitored, MarketNotMonitored
from utils.utcnow import to_utc_naive

router = APIRouter(prefix="/markets", tags=["Markets"])


class AddMarketRequest(BaseModel):
    market_id: str
    condition_id: Optional[str] = None
    question: Optional[str] = None
    slug: Optional[str] = None
    end_date: Optional[datetime] = None


class MarketStatusRequest(BaseModel):
    is_active: bool


@router.get("")
async def list_markets(
    active_only: bool = Query(default=False),
    runtime: TradingRuntime = Depends(get_runtime),
):
    markets = await runtime.trading_loop.list_markets(active_only=active_only)
    return [model_to_dict(m) for m in markets]


@router.post("")
async def add_market(request: AddMarketRequest, runtime: TradingRuntime = Depends(get_runtime)):
    """Start monitoring a market; CLOB token ids are fetched from Gamma."""
    try:
        market, reactivated = await runtime.trading_loop.add_market(
            request.market_id,
            condition_id=request.condition_id,
            question=request.question,
            slug=request.slug,
            end_date=to_utc_naive(request.end_date),
        )
    except MarketAlreadyMonitored:
        raise HTTPException(status_code=400, detail="Market already being monitored")
    return {"reactivated": reactivated, "market": model_to_dict(market)}


@router.patch("/{market_id}/status")
async def set_market_status(
    market_id: str,
    request: MarketStatusRequest,
    runtime: TradingRuntime = Depends(get_runtime),
):
    try:
        market = await runtime.trading_loop.set_market_active(market_id, request.is_active)
    except MarketNotMonitored:
        raise HTTPException(status_code=404, detail="Market not found")
    return model_to_dict(market)


@router.get("/{market_id}/price-history")
async def get_price_history(
    market_id: str,
    limit: int = Query(default=500, ge=1, le=5000),
    runtime: TradingRuntime = Depends(get_runtime),
):
    history = await runtime.trading_loop.get_price_history(market_id, limit=limit)
    return [model_to_dict(point) for point in history]


@router.post("/{market_id}/refresh-history")
async def refresh_price_history(market_id: str, runtime: TradingRuntime = Depends(get_runtime)):
    market = await runtime.trading_loop.get_monitored_market(market_id)
    if market is None:
        raise HTTPException(status_code=404, detail="Market not found")
    added = await runtime.trading_loop.update_price_history(market)
    history = await runtime.trading_loop.get_price_history(market_id)
    return {"added": added, "history": [model_to_dict(point) for point in history]}
