"""
Snipe API Routes

Copy-trading of top leaderboard positions.
"""

from fastapi import APIRouter, Depends, Query

from api.deps import get_runtime
from models.database import SnipeStatus
from services.runtime import TradingRuntime
from services.snipe import sniped_position_to_dict

router = APIRouter(prefix="/snipe", tags=["Snipe"])


@router.get("/status")
async def get_snipe_status(runtime: TradingRuntime = Depends(get_runtime)):
    status = await runtime.snipe.get_status()
    risk = await runtime.ledger.get_risk_config()
    status.update(
        {
            "snipe_enabled": bool(risk.snipe_enabled) if risk else False,
            "snipe_size": float(risk.snipe_size) if risk else None,
            "profit_target": float(risk.snipe_profit_target) if risk else None,
        }
    )
    return status


@router.get("/top-positions")
async def get_top_positions(
    category: str = Query(default="OVERALL"),
    time_period: str = Query(default="DAY"),
    runtime: TradingRuntime = Depends(get_runtime),
):
    """Preview of what a snipe pass would copy"""
    positions = await runtime.snipe.get_top_positions(category=category, time_period=time_period)
    return [p.to_dict() for p in positions]


@router.get("/positions")
async def list_positions(runtime: TradingRuntime = Depends(get_runtime)):
    return [sniped_position_to_dict(p) for p in await runtime.snipe.list_positions()]


@router.get("/positions/open")
async def list_open_positions(runtime: TradingRuntime = Depends(get_runtime)):
    positions = await runtime.snipe.list_positions(status=SnipeStatus.OPEN)
    return [sniped_position_to_dict(p) for p in positions]


@router.post("/execute")
async def snipe_now(runtime: TradingRuntime = Depends(get_runtime)):
    return await runtime.snipe.snipe_top_positions()


@router.post("/check")
async def check_positions(runtime: TradingRuntime = Depends(get_runtime)):
    return await runtime.snipe.check_and_close_positions()


@router.post("/start")
async def start_snipe(runtime: TradingRuntime = Depends(get_runtime)):
    started = await runtime.snipe.start()
    return {"status": "started" if started else "already_running"}


@router.post("/stop")
async def stop_snipe(runtime: TradingRuntime = Depends(get_runtime)):
    await runtime.snipe.stop()
    return {"status": "stopped"}
