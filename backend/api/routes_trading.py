"""
Trading API Routes

Control of the AI trading loop plus risk-checked manual trades.

IMPORTANT: With paper trading mode off, /execute places real orders with
real money. The Risk Gate still applies.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.deps import get_runtime
from models.database import TradeOutcome
from services.runtime import TradingRuntime
from services.trading_loop import MarketNotMonitored
from utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/trading", tags=["Trading"])


# ==================== REQUEST MODELS ====================


class ValidateTradeRequest(BaseModel):
    market_id: str
    size: float = Field(..., description="Proposed size in USDC")
    confidence: float = Field(default=1.0, ge=0, le=1)


class ExecuteTradeRequest(BaseModel):
    market_id: str
    outcome: TradeOutcome
    size: float = Field(..., gt=0, description="USDC to spend")


# ==================== ENDPOINTS ====================


@router.get("/status")
async def get_trading_status(runtime: TradingRuntime = Depends(get_runtime)):
    """Loop, budget, spread and snipe status in one call"""
    return await runtime.get_status()


@router.post("/start")
async def start_trading(runtime: TradingRuntime = Depends(get_runtime)):
    started = await runtime.trading_loop.start()
    return {"status": "started" if started else "already_running"}


@router.post("/stop")
async def stop_trading(runtime: TradingRuntime = Depends(get_runtime)):
    await runtime.trading_loop.stop()
    return {"status": "stopped"}


@router.post("/analyze/{market_id}")
async def analyze_market(market_id: str, runtime: TradingRuntime = Depends(get_runtime)):
    """One-off analysis of a monitored market, ignoring the cooldown"""
    try:
        return await runtime.trading_loop.analyze_market(market_id)
    except MarketNotMonitored:
        raise HTTPException(status_code=404, detail="Market not found")


@router.post("/validate")
async def validate_trade(
    request: ValidateTradeRequest, runtime: TradingRuntime = Depends(get_runtime)
):
    """Dry run of the Risk Gate"""
    decision = await runtime.risk_gate.validate_trade(
        request.market_id, request.size, request.confidence
    )
    return decision.to_dict()


@router.post("/execute")
async def execute_trade(
    request: ExecuteTradeRequest, runtime: TradingRuntime = Depends(get_runtime)
):
    try:
        result = await runtime.trading_loop.execute_manual_trade(
            request.market_id, request.outcome, request.size
        )
    except MarketNotMonitored:
        raise HTTPException(status_code=404, detail="Market not found")
    if not result["executed"]:
        logger.info("Manual trade not executed", market_id=request.market_id, result=result)
    return result
