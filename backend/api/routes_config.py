"""
Config API Routes

Risk limits, app mode and spread settings are stored in the database so
they can be changed at runtime without a restart.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_runtime
from models.database import model_to_dict
from services.runtime import TradingRuntime

router = APIRouter(prefix="/config", tags=["Config"])


# ==================== REQUEST MODELS ====================


class RiskConfigUpdate(BaseModel):
    max_bet_size: Optional[float] = Field(default=None, gt=0)
    daily_budget: Optional[float] = Field(default=None, ge=0)
    max_open_positions: Optional[int] = Field(default=None, ge=0)
    min_confidence_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    max_market_exposure: Optional[float] = Field(default=None, ge=0)
    snipe_enabled: Optional[bool] = None
    snipe_size: Optional[float] = Field(default=None, gt=0)
    snipe_profit_target: Optional[float] = Field(default=None, gt=0)


class AppConfigUpdate(BaseModel):
    paper_trading_mode: Optional[bool] = None
    trading_enabled: Optional[bool] = None
    analysis_interval_minutes: Optional[int] = Field(default=None, ge=1, le=1440)


class SpreadConfigUpdate(BaseModel):
    spread_enabled: Optional[bool] = None
    scan_interval_seconds: Optional[int] = Field(default=None, ge=5)
    min_spread_threshold: Optional[float] = Field(default=None, ge=0)
    max_spread_bet_size: Optional[float] = Field(default=None, gt=0)
    auto_execute: Optional[bool] = None
    scan_multi_outcome: Optional[bool] = None


def _row(row) -> Optional[dict]:
    return model_to_dict(row) if row is not None else None


# ==================== ENDPOINTS ====================


@router.get("/risk")
async def get_risk_config(runtime: TradingRuntime = Depends(get_runtime)):
    return _row(await runtime.ledger.get_risk_config())


@router.put("/risk")
async def update_risk_config(
    request: RiskConfigUpdate, runtime: TradingRuntime = Depends(get_runtime)
):
    row = await runtime.ledger.update_risk_config(request.model_dump(exclude_none=True))
    return model_to_dict(row)


@router.get("/app")
async def get_app_config(runtime: TradingRuntime = Depends(get_runtime)):
    return _row(await runtime.ledger.get_app_config())


@router.put("/app")
async def update_app_config(
    request: AppConfigUpdate, runtime: TradingRuntime = Depends(get_runtime)
):
    row = await runtime.ledger.update_app_config(request.model_dump(exclude_none=True))
    return model_to_dict(row)


@router.get("/spread")
async def get_spread_config(runtime: TradingRuntime = Depends(get_runtime)):
    return _row(await runtime.ledger.get_spread_config())


@router.put("/spread")
async def update_spread_config(
    request: SpreadConfigUpdate, runtime: TradingRuntime = Depends(get_runtime)
):
    row = await runtime.ledger.update_spread_config(request.model_dump(exclude_none=True))
    return model_to_dict(row)


@router.get("/budget")
async def get_budget(runtime: TradingRuntime = Depends(get_runtime)):
    """Today's spend, P&L and remaining budget"""
    return await runtime.ledger.get_budget_status()
