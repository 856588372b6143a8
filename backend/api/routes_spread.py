"""
Spread API Routes

Arbitrage scanner, executor and resolver controls.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.deps import get_runtime
from models.database import SpreadTradeStatus
from services.runtime import TradingRuntime
from services.spread import (
    OpportunityNotFound,
    SpreadConfigMissing,
    opportunity_to_dict,
    spread_trade_to_dict,
)

router = APIRouter(prefix="/spread", tags=["Spread"])


class ExecuteSpreadRequest(BaseModel):
    # Defaults to the configured max_spread_bet_size
    total_investment: Optional[float] = Field(default=None, gt=0)


@router.get("/status")
async def get_spread_status(runtime: TradingRuntime = Depends(get_runtime)):
    return await runtime.spread.get_status()


@router.get("/opportunities")
async def list_opportunities(
    active_only: bool = Query(default=True),
    runtime: TradingRuntime = Depends(get_runtime),
):
    opportunities = await runtime.spread.list_opportunities(active_only=active_only)
    return [opportunity_to_dict(o) for o in opportunities]


@router.get("/trades")
async def list_spread_trades(
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: TradingRuntime = Depends(get_runtime),
):
    trades = await runtime.spread.list_trades(limit=limit)
    return [spread_trade_to_dict(t) for t in trades]


@router.get("/trades/open")
async def list_open_spread_trades(runtime: TradingRuntime = Depends(get_runtime)):
    trades = await runtime.spread.list_trades(status=SpreadTradeStatus.OPEN)
    return [spread_trade_to_dict(t) for t in trades]


@router.get("/trades/stats")
async def get_spread_stats(runtime: TradingRuntime = Depends(get_runtime)):
    return await runtime.spread.get_stats()


@router.post("/scan")
async def scan_now(runtime: TradingRuntime = Depends(get_runtime)):
    return await runtime.spread.scan_all()


@router.post("/execute/{opportunity_id}")
async def execute_opportunity(
    opportunity_id: int,
    request: Optional[ExecuteSpreadRequest] = None,
    runtime: TradingRuntime = Depends(get_runtime),
):
    total = request.total_investment if request else None
    if total is None:
        config = await runtime.spread.ledger.get_spread_config()
        if config is None:
            raise HTTPException(status_code=409, detail=str(SpreadConfigMissing()))
        total = float(config.max_spread_bet_size)
    try:
        return await runtime.spread.execute_opportunity(opportunity_id, total)
    except OpportunityNotFound:
        raise HTTPException(status_code=404, detail="Opportunity not found or inactive")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/check")
async def check_open_trades(
    force: bool = Query(default=False, description="Also check trades not yet past end date"),
    runtime: TradingRuntime = Depends(get_runtime),
):
    return await runtime.spread.check_open_trades(force_all=force)


@router.post("/start")
async def start_spread(runtime: TradingRuntime = Depends(get_runtime)):
    try:
        started = await runtime.spread.start()
    except SpreadConfigMissing as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "started" if started else "already_running"}


@router.post("/stop")
async def stop_spread(runtime: TradingRuntime = Depends(get_runtime)):
    await runtime.spread.stop()
    return {"status": "stopped"}
