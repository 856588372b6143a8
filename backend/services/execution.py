"""
Execution Service - order placement on the Polymarket CLOB

Wraps py-clob-client for live orders and produces synthetic fills for
paper trading. Every call returns a ``ProviderResult`` so loops can fall
back (usually to paper) without try/except at each call site.

IMPORTANT: Live trading involves real money. Paper mode is the default
(``app_config.paper_trading_mode``).

Setup for live trading:
1. Set POLYMARKET_PRIVATE_KEY and POLYMARKET_FUNDER_ADDRESS
2. Optionally set POLYMARKET_API_KEY / _SECRET / _PASSPHRASE
   (derived from the private key when absent)
3. Turn paper_trading_mode off via /api/config/app
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    MarketOrderArgs,
    OpenOrderParams,
    OrderArgs,
    OrderType,
)
from py_clob_client.order_builder.constants import BUY, SELL

from config import settings
from models.results import ProviderResult
from utils.logger import get_logger

logger = get_logger("execution")

PAPER_PREFIX = "PAPER"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    FILLED = "FILLED"  # Paper fills and matched live orders
    LIVE = "LIVE"  # Resting on the book
    DELAYED = "DELAYED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


_CLOB_STATUS_MAP = {
    "matched": OrderStatus.FILLED,
    "filled": OrderStatus.FILLED,
    "live": OrderStatus.LIVE,
    "delayed": OrderStatus.DELAYED,
    "unmatched": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
}


def normalize_order_status(raw: object) -> OrderStatus:
    return _CLOB_STATUS_MAP.get(str(raw or "").strip().lower(), OrderStatus.UNKNOWN)


def paper_order_id(prefix: str = PAPER_PREFIX) -> str:
    """Synthetic order id that is distinguishable from exchange ids."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def is_paper_order_id(order_id: Optional[str]) -> bool:
    return bool(order_id) and str(order_id).startswith(f"{PAPER_PREFIX}_")


@dataclass
class OrderReceipt:
    """Acknowledgement of an order, paper or live"""

    order_id: str
    token_id: str
    side: OrderSide
    amount: float  # USDC for market BUY, shares otherwise
    status: OrderStatus
    is_paper: bool
    price: Optional[float] = None
    raw: dict = field(default_factory=dict)


class ExecutionClient:
    """Places, cancels and inspects orders.

    Paper orders never touch the network. Live orders require
    ``initialize()`` to have built an authenticated ``ClobClient``.
    """

    def __init__(self):
        self._client: Optional[ClobClient] = None
        self._initialized = False
        self._init_error: Optional[str] = None

    async def initialize(self) -> bool:
        """
        Build the authenticated CLOB client.

        Returns True when live trading is possible. Missing credentials are
        not an error: the service stays usable for paper trading.
        """
        self._initialized = True
        if not settings.POLYMARKET_PRIVATE_KEY:
            self._init_error = "Missing POLYMARKET_PRIVATE_KEY"
            logger.warning("Polymarket private key not configured - paper trading only")
            return False

        try:
            self._client = await asyncio.to_thread(self._build_client)
        except Exception as e:
            self._client = None
            self._init_error = str(e)
            logger.error("Failed to initialize CLOB client", error=str(e))
            return False

        self._init_error = None
        logger.info(
            "Execution client initialized",
            signature_type=settings.POLYMARKET_SIGNATURE_TYPE,
            funder=settings.POLYMARKET_FUNDER_ADDRESS,
        )
        return True

    def _build_client(self) -> ClobClient:
        creds = None
        if all(
            [
                settings.POLYMARKET_API_KEY,
                settings.POLYMARKET_API_SECRET,
                settings.POLYMARKET_API_PASSPHRASE,
            ]
        ):
            creds = ApiCreds(
                api_key=settings.POLYMARKET_API_KEY,
                api_secret=settings.POLYMARKET_API_SECRET,
                api_passphrase=settings.POLYMARKET_API_PASSPHRASE,
            )

        client = ClobClient(
            host=settings.CLOB_API_URL,
            key=settings.POLYMARKET_PRIVATE_KEY,
            chain_id=settings.CHAIN_ID,
            creds=creds,
            signature_type=settings.POLYMARKET_SIGNATURE_TYPE,
            funder=settings.POLYMARKET_FUNDER_ADDRESS,
        )
        if creds is None:
            logger.info("Deriving CLOB API credentials from private key")
            client.set_api_creds(client.create_or_derive_api_creds())
        return client

    def is_live_ready(self) -> bool:
        return self._client is not None

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "live_ready": self.is_live_ready(),
            "error": self._init_error,
        }

    def _require_client(self) -> ClobClient:
        if self._client is None:
            raise RuntimeError(self._init_error or "Live trading client not initialized")
        return self._client

    # ==================== ORDERS ====================

    async def place_market_order(
        self,
        token_id: str,
        side: OrderSide,
        amount: float,
        paper: bool,
        quoted_price: Optional[float] = None,
        paper_prefix: str = PAPER_PREFIX,
    ) -> ProviderResult[OrderReceipt]:
        """
        Buy or sell at the best available price.

        Args:
            token_id: CLOB token of the outcome
            side: BUY or SELL
            amount: USDC to spend for BUY, shares to sell for SELL
            paper: Simulate an instant fill instead of hitting the exchange
            quoted_price: Price recorded on paper fills
        """
        if paper:
            receipt = OrderReceipt(
                order_id=paper_order_id(paper_prefix),
                token_id=token_id,
                side=side,
                amount=amount,
                status=OrderStatus.FILLED,
                is_paper=True,
                price=quoted_price,
            )
            logger.info(
                "[PAPER] Market order filled",
                side=side.value,
                amount=amount,
                token_id=token_id,
                order_id=receipt.order_id,
            )
            return ProviderResult.success(receipt, source="paper")

        if not token_id:
            return ProviderResult.failure("Missing token id", source="clob")

        def _submit() -> dict:
            client = self._require_client()
            signed = client.create_market_order(
                MarketOrderArgs(
                    token_id=token_id,
                    amount=float(amount),
                    side=BUY if side == OrderSide.BUY else SELL,
                )
            )
            return client.post_order(signed, OrderType.FOK)

        result = await ProviderResult.capture(asyncio.to_thread(_submit), source="clob")
        return self._receipt_from_response(result, token_id, side, amount, quoted_price)

    async def place_limit_order(
        self,
        token_id: str,
        side: OrderSide,
        price: float,
        size: float,
        paper: bool,
    ) -> ProviderResult[OrderReceipt]:
        """Place a GTC limit order for ``size`` shares at ``price``."""
        if paper:
            receipt = OrderReceipt(
                order_id=paper_order_id(),
                token_id=token_id,
                side=side,
                amount=size,
                status=OrderStatus.FILLED,
                is_paper=True,
                price=price,
            )
            logger.info(
                "[PAPER] Limit order filled",
                side=side.value,
                size=size,
                price=price,
                token_id=token_id,
            )
            return ProviderResult.success(receipt, source="paper")

        def _submit() -> dict:
            client = self._require_client()
            signed = client.create_order(
                OrderArgs(
                    price=float(price),
                    size=float(size),
                    side=BUY if side == OrderSide.BUY else SELL,
                    token_id=token_id,
                )
            )
            return client.post_order(signed, OrderType.GTC)

        result = await ProviderResult.capture(asyncio.to_thread(_submit), source="clob")
        return self._receipt_from_response(result, token_id, side, size, price)

    def _receipt_from_response(
        self,
        result: ProviderResult[dict],
        token_id: str,
        side: OrderSide,
        amount: float,
        price: Optional[float],
    ) -> ProviderResult[OrderReceipt]:
        if not result.ok:
            logger.error("Order submission failed", token_id=token_id, error=result.error)
            return ProviderResult.failure(result.error, source="clob")

        response = result.value or {}
        if not response.get("success") or not response.get("orderID"):
            error = response.get("errorMsg") or "Order rejected"
            logger.error("Order rejected by exchange", token_id=token_id, error=error)
            return ProviderResult.failure(error, source="clob")

        receipt = OrderReceipt(
            order_id=str(response["orderID"]),
            token_id=token_id,
            side=side,
            amount=amount,
            status=normalize_order_status(response.get("status")),
            is_paper=False,
            price=price,
            raw=response,
        )
        logger.info(
            "[LIVE] Order placed",
            order_id=receipt.order_id,
            status=receipt.status.value,
            side=side.value,
            amount=amount,
        )
        return ProviderResult.success(receipt, source="clob")

    async def get_order_status(self, order_id: str) -> ProviderResult[OrderStatus]:
        if is_paper_order_id(order_id):
            return ProviderResult.success(OrderStatus.FILLED, source="paper")

        def _fetch() -> dict:
            return self._require_client().get_order(order_id)

        result = await ProviderResult.capture(asyncio.to_thread(_fetch), source="clob")
        if not result.ok:
            return ProviderResult.failure(result.error, source="clob")
        return ProviderResult.success(
            normalize_order_status((result.value or {}).get("status")), source="clob"
        )

    async def cancel_order(self, order_id: str) -> ProviderResult[bool]:
        if is_paper_order_id(order_id):
            logger.info("[PAPER] Order cancelled", order_id=order_id)
            return ProviderResult.success(True, source="paper")

        def _cancel() -> dict:
            return self._require_client().cancel(order_id)

        result = await ProviderResult.capture(asyncio.to_thread(_cancel), source="clob")
        if not result.ok:
            return ProviderResult.failure(result.error, source="clob")
        canceled = (result.value or {}).get("canceled") or []
        return ProviderResult.success(order_id in canceled, source="clob")

    async def get_balance(self) -> ProviderResult[dict]:
        """USDC collateral balance and allowance on the exchange"""

        def _fetch() -> dict:
            return self._require_client().get_balance_allowance(
                BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
            )

        result = await ProviderResult.capture(asyncio.to_thread(_fetch), source="clob")
        if not result.ok:
            return result
        raw = result.value or {}
        # Balances are reported in 6-decimal base units
        balance = float(raw.get("balance") or 0) / 1_000_000
        return ProviderResult.success(
            {"balance": balance, "allowances": raw.get("allowances") or raw.get("allowance")},
            source="clob",
        )

    async def get_open_orders(self) -> ProviderResult[list]:
        def _fetch() -> list:
            return self._require_client().get_orders(OpenOrderParams())

        return await ProviderResult.capture(asyncio.to_thread(_fetch), source="clob")
