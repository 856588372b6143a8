"""Wiring of the trading services into one process-wide runtime."""

from typing import Optional

from models.database import AsyncSessionLocal
from services.account import AccountService
from services.ai.advisor import AdvisoryClient
from services.event_bus import EventBus
from services.execution import ExecutionClient
from services.ledger import BudgetLedger
from services.polymarket import PolymarketClient
from services.risk_gate import RiskGate
from services.snipe import SnipeService
from services.spread import SpreadService
from services.trading_loop import TradingLoop
from utils.logger import get_logger

logger = get_logger("runtime")


class TradingRuntime:
    """Owns every long-lived service and their shared collaborators.

    Built once at application startup; routes reach the services through
    ``app.state.runtime``. Tests construct it with fakes and a temporary
    session factory.
    """

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        polymarket: Optional[PolymarketClient] = None,
        execution: Optional[ExecutionClient] = None,
        advisor: Optional[AdvisoryClient] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.session_factory = session_factory
        self.polymarket = polymarket or PolymarketClient()
        self.execution = execution or ExecutionClient()
        self.advisor = advisor or AdvisoryClient()
        self.event_bus = event_bus or EventBus()
        self.ledger = BudgetLedger(session_factory)
        self.risk_gate = RiskGate(self.ledger, session_factory)
        self.trading_loop = TradingLoop(
            self.polymarket,
            self.execution,
            self.ledger,
            self.risk_gate,
            self.advisor,
            self.event_bus,
            session_factory,
        )
        self.spread = SpreadService(
            self.polymarket, self.execution, self.ledger, self.event_bus, session_factory
        )
        self.snipe = SnipeService(
            self.polymarket, self.execution, self.ledger, self.event_bus, session_factory
        )
        self.account = AccountService(self.polymarket, self.execution, self.ledger)

    async def startup(self) -> None:
        """Initialize execution and auto-start whatever the stored config enables."""
        live_ready = await self.execution.initialize()
        logger.info(
            "Runtime starting",
            live_ready=live_ready,
            advisory_providers=self.advisor.provider_names,
        )

        if await self.ledger.is_trading_enabled():
            await self.trading_loop.start()
        else:
            # Resolution still runs for trades left open by an earlier session
            await self.trading_loop.resolve_expired_trades()

        spread_config = await self.ledger.get_spread_config()
        if spread_config is None:
            logger.warning("Spread configuration not found, scanner not started")
        if spread_config and spread_config.spread_enabled:
            await self.spread.start()
        else:
            await self.spread.start_resolver()

        risk_config = await self.ledger.get_risk_config()
        if risk_config and risk_config.snipe_enabled:
            await self.snipe.start()

    async def shutdown(self) -> None:
        await self.trading_loop.shutdown()
        await self.spread.shutdown()
        await self.snipe.stop()
        await self.event_bus.drain()
        await self.polymarket.close()
        logger.info("Runtime stopped")

    async def get_status(self) -> dict:
        return {
            "trading": await self.trading_loop.get_status(),
            "budget": await self.ledger.get_budget_status(),
            "spread": await self.spread.get_status(),
            "snipe": await self.snipe.get_status(),
        }
