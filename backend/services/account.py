"""
Account Service - the configured wallet as the exchange sees it

Reads the CLOB collateral balance and open orders through the
authenticated execution client, and the wallet's holdings through the
public Data API (keyed by POLYMARKET_FUNDER_ADDRESS). Local bookkeeping
(daily budget, realized P&L) comes from the ledger so the dashboard can
compare the two.
"""

import asyncio
from typing import Optional

from config import settings
from models.market import AccountPosition
from models.results import ProviderResult
from services.execution import ExecutionClient
from services.ledger import BudgetLedger
from services.polymarket import PolymarketClient
from utils.logger import get_logger

logger = get_logger("account")


class AccountNotConfigured(LookupError):
    def __init__(self):
        super().__init__("POLYMARKET_FUNDER_ADDRESS not configured")


def summarize_positions(positions: list[AccountPosition]) -> dict:
    initial = sum(p.initial_value for p in positions)
    current = sum(p.current_value for p in positions)
    return {
        "positions": len(positions),
        "redeemable": sum(1 for p in positions if p.redeemable),
        "initial_value": initial,
        "current_value": current,
        "unrealized_pnl": sum(p.cash_pnl for p in positions),
        "realized_pnl": sum(p.realized_pnl for p in positions),
        "percent_pnl": ((current - initial) / initial * 100.0) if initial > 0 else 0.0,
    }


def account_position_to_dict(position: AccountPosition) -> dict:
    data = position.model_dump()
    data["percent_pnl"] = position.percent_pnl
    if position.end_date:
        data["end_date"] = position.end_date.isoformat()
    return data


class AccountService:
    def __init__(
        self,
        polymarket: PolymarketClient,
        execution: ExecutionClient,
        ledger: BudgetLedger,
    ):
        self.polymarket = polymarket
        self.execution = execution
        self.ledger = ledger

    @property
    def funder_address(self) -> Optional[str]:
        return settings.POLYMARKET_FUNDER_ADDRESS or None

    async def get_balance(self) -> ProviderResult[dict]:
        return await self.execution.get_balance()

    async def get_open_orders(self) -> ProviderResult[list]:
        return await self.execution.get_open_orders()

    async def get_positions(self) -> ProviderResult[list[AccountPosition]]:
        """Raises ``AccountNotConfigured`` when no wallet address is set."""
        address = self.funder_address
        if not address:
            raise AccountNotConfigured()
        result = await ProviderResult.capture(self.polymarket.get_positions(address), source="data-api")
        if not result.ok:
            logger.warning("Failed to fetch account positions", error=result.error)
        return result

    async def get_pnl(self) -> dict:
        """Wallet P&L from the Data API next to today's ledger figures."""
        wallet = None
        wallet_error = None
        try:
            positions = await self.get_positions()
        except AccountNotConfigured as e:
            wallet_error = str(e)
        else:
            if positions.ok:
                wallet = summarize_positions(positions.value)
            else:
                wallet_error = positions.error
        return {
            "wallet": wallet,
            "wallet_error": wallet_error,
            "today": await self.ledger.get_budget_status(),
        }

    async def get_summary(self) -> dict:
        """Everything the account page shows; unavailable parts are None."""
        balance, orders = await asyncio.gather(self.get_balance(), self.get_open_orders())
        errors = {}
        if not balance.ok:
            errors["balance"] = balance.error
        if not orders.ok:
            errors["open_orders"] = orders.error

        positions = None
        try:
            fetched = await self.get_positions()
        except AccountNotConfigured as e:
            errors["positions"] = str(e)
        else:
            if fetched.ok:
                positions = fetched.value
            else:
                errors["positions"] = fetched.error

        return {
            "has_credentials": settings.has_clob_credentials,
            "live_ready": self.execution.is_live_ready(),
            "funder_address": self.funder_address,
            "balance": balance.unwrap_or(None),
            "open_orders": len(orders.value or []) if orders.ok else None,
            "positions": [account_position_to_dict(p) for p in positions] if positions is not None else None,
            "pnl": summarize_positions(positions) if positions is not None else None,
            "budget": await self.ledger.get_budget_status(),
            "errors": errors,
        }
