"""
Trades API Routes

AI trade history, open positions and the analysis log.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_runtime
from models.database import TradeStatus
from services.runtime import TradingRuntime
from services.trading_loop import analysis_to_dict, trade_to_dict

router = APIRouter(prefix="/trades", tags=["Trades"])


@router.get("")
async def list_trades(
    market_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: TradingRuntime = Depends(get_runtime),
):
    trades = await runtime.trading_loop.list_trades(market_id=market_id, limit=limit)
    return [trade_to_dict(t) for t in trades]


@router.get("/positions")
async def list_open_positions(runtime: TradingRuntime = Depends(get_runtime)):
    trades = await runtime.trading_loop.list_trades(status=TradeStatus.EXECUTED, limit=1000)
    return [trade_to_dict(t) for t in trades]


@router.get("/resolved")
async def list_resolved_trades(
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: TradingRuntime = Depends(get_runtime),
):
    trades = await runtime.trading_loop.list_trades(status=TradeStatus.RESOLVED, limit=limit)
    return [trade_to_dict(t) for t in trades]


@router.get("/analyses")
async def list_analyses(
    market_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    runtime: TradingRuntime = Depends(get_runtime),
):
    logs = await runtime.trading_loop.list_analyses(market_id=market_id, limit=limit)
    return [analysis_to_dict(log) for log in logs]


@router.post("/resolve")
async def resolve_trades(
    force: bool = Query(default=False, description="Check trades whose end date has not passed"),
    runtime: TradingRuntime = Depends(get_runtime),
):
    """Run trade resolution now instead of waiting for the scheduler"""
    result = await runtime.trading_loop.resolve_expired_trades(force_all=force)
    resolved = await runtime.trading_loop.list_trades(status=TradeStatus.RESOLVED)
    return {"result": result, "resolved": [trade_to_dict(t) for t in resolved]}
