"""
Leaderboard API Routes

Top Polymarket traders and their recent buys, straight from the Data API.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from api.deps import get_runtime
from models.market import LeaderboardEntry
from models.results import ProviderResult
from services.runtime import TradingRuntime
from services.snipe import group_trader_fills

router = APIRouter(prefix="/leaderboard", tags=["Leaderboard"])


@router.get("")
async def get_leaderboard(
    category: str = Query(default="OVERALL"),
    time_period: str = Query(default="DAY"),
    order_by: str = Query(default="PNL"),
    limit: int = Query(default=10, ge=1, le=50),
    runtime: TradingRuntime = Depends(get_runtime),
):
    result = await ProviderResult.capture(
        runtime.polymarket.get_leaderboard(
            limit=limit, time_period=time_period, order_by=order_by, category=category
        ),
        source="data-api",
    )
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    return [entry.model_dump() for entry in result.value]


@router.get("/trader/{address}/positions")
async def get_trader_positions(
    address: str,
    limit: int = Query(default=20, ge=1, le=500, description="Fills to group"),
    runtime: TradingRuntime = Depends(get_runtime),
):
    """A trader's recent buys grouped per market outcome, newest first"""
    result = await ProviderResult.capture(
        runtime.polymarket.get_trader_activity(address, limit=limit), source="data-api"
    )
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)

    trader = LeaderboardEntry(address=address, name=address[:10])
    positions = group_trader_fills(trader, result.value)
    positions.sort(key=lambda p: p.latest_timestamp.timestamp() if p.latest_timestamp else 0.0, reverse=True)
    return [p.to_dict() for p in positions[:10]]
