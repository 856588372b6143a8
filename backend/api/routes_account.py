"""
Account API Routes

The configured wallet: CLOB balance, open orders, Data API holdings and
P&L. Order placement here bypasses the Risk Gate, so it is meant for
manual management (for example resting a limit sell on a held position).
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from api.deps import get_runtime
from services.account import AccountNotConfigured, account_position_to_dict
from services.execution import OrderSide
from services.runtime import TradingRuntime
from utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/account", tags=["Account"])


class LimitOrderRequest(BaseModel):
    token_id: str = Field(..., min_length=1)
    side: OrderSide
    price: float = Field(..., gt=0, lt=1)
    size: float = Field(..., gt=0, description="Shares")


@router.get("/summary")
async def get_account_summary(runtime: TradingRuntime = Depends(get_runtime)):
    return await runtime.account.get_summary()


@router.get("/balance")
async def get_balance(runtime: TradingRuntime = Depends(get_runtime)):
    result = await runtime.account.get_balance()
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.error)
    return result.value


@router.get("/positions")
async def get_positions(runtime: TradingRuntime = Depends(get_runtime)):
    try:
        result = await runtime.account.get_positions()
    except AccountNotConfigured as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    return [account_position_to_dict(p) for p in result.value]


@router.get("/pnl")
async def get_pnl(runtime: TradingRuntime = Depends(get_runtime)):
    return await runtime.account.get_pnl()


@router.get("/orders")
async def list_open_orders(runtime: TradingRuntime = Depends(get_runtime)):
    result = await runtime.account.get_open_orders()
    if not result.ok:
        raise HTTPException(status_code=503, detail=result.error)
    return result.value


@router.post("/orders")
async def place_limit_order(request: LimitOrderRequest, runtime: TradingRuntime = Depends(get_runtime)):
    paper = await runtime.ledger.is_paper_trading_mode()
    result = await runtime.execution.place_limit_order(
        request.token_id, request.side, request.price, request.size, paper=paper
    )
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    receipt = result.value
    logger.info(
        "Manual limit order placed",
        order_id=receipt.order_id,
        side=receipt.side.value,
        price=receipt.price,
        size=receipt.amount,
        paper=receipt.is_paper,
    )
    return {
        "order_id": receipt.order_id,
        "token_id": receipt.token_id,
        "side": receipt.side.value,
        "price": receipt.price,
        "size": receipt.amount,
        "status": receipt.status.value,
        "is_paper": receipt.is_paper,
    }


@router.delete("/orders/{order_id}")
async def cancel_order(order_id: str, runtime: TradingRuntime = Depends(get_runtime)):
    result = await runtime.execution.cancel_order(order_id)
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error)
    return {"order_id": order_id, "cancelled": bool(result.value)}
