"""
AI Trading Loop - periodic advisory-driven trading over monitored markets

Each cycle:
1. Resolve expired trades (always, even with trading disabled)
2. Stop here unless trading is enabled
3. For every active market: refresh price history, then analyze and trade

Every model decision goes through the Risk Gate before any order is
placed, and every fill is recorded on the Budget Ledger.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_upsert

from config import settings
from models.database import (
    AnalysisLog,
    AsyncSessionLocal,
    MonitoredMarket,
    PriceHistory,
    Trade,
    TradeOutcome,
    TradeSide,
    TradeStatus,
    model_to_dict,
)
from models.market import GammaMarket, is_valid_price
from models.results import ProviderResult
from services.ai.advisor import (
    AdvisoryClient,
    AdvisoryDecision,
    Decision,
    MarketSnapshot,
    PositionInfo,
    RiskConstraints,
)
from services.event_bus import EventBus
from services.execution import ExecutionClient, OrderSide, OrderStatus
from services.ledger import DEFAULT_ANALYSIS_INTERVAL_MINUTES, BudgetLedger
from services.polymarket import PolymarketClient
from services.resolution import ResolutionScheduler, empty_check_result, is_past_due
from services.risk_gate import RiskGate
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("trading_loop")


class MarketNotMonitored(LookupError):
    pass


class MarketAlreadyMonitored(ValueError):
    pass


@dataclass
class OpenAITrade:
    """An EXECUTED trade paired with its market's end date"""

    trade: Trade
    end_date: Optional[datetime]


def resolution_pnl(size: float, price: float, won: bool) -> float:
    """Each share pays 1.0 on a win; a loss forfeits the stake."""
    if not won:
        return -size
    if price <= 0:
        return 0.0
    return size / price - size


def winning_outcome(market: GammaMarket) -> Optional[str]:
    """YES or NO once one side trades above the win price, else None."""
    threshold = settings.RESOLUTION_WIN_PRICE
    if is_valid_price(market.yes_price) and market.yes_price > threshold:
        return TradeOutcome.YES.value
    if is_valid_price(market.no_price) and market.no_price > threshold:
        return TradeOutcome.NO.value
    return None


def trade_to_dict(trade: Trade) -> dict:
    return model_to_dict(trade)


def analysis_to_dict(log: AnalysisLog) -> dict:
    data = model_to_dict(log)
    for key in ("market_data", "response"):
        if data.get(key):
            try:
                data[key] = json.loads(data[key])
            except (TypeError, ValueError):
                pass
    return data


class AITradeResolutionTarget:
    """Settles EXECUTED AI trades once their market closes"""

    name = "ai"

    def __init__(self, loop: "TradingLoop"):
        self._loop = loop

    async def list_open(self) -> list[OpenAITrade]:
        # Trades on markets without an end date cannot be scheduled
        query = (
            select(Trade, MonitoredMarket.end_date)
            .join(MonitoredMarket, MonitoredMarket.market_id == Trade.market_id)
            .where(
                Trade.status == TradeStatus.EXECUTED.value,
                MonitoredMarket.end_date.is_not(None),
            )
        )
        async with self._loop._session_factory() as session:
            rows = (await session.execute(query)).all()
        return [OpenAITrade(trade=row[0], end_date=row[1]) for row in rows]

    async def check(self, force_all: bool = False) -> dict:
        result = empty_check_result()
        now = utcnow()
        markets: dict[str, Optional[GammaMarket]] = {}
        for item in await self.list_open():
            trade = item.trade
            if not force_all and not is_past_due(item.end_date, now):
                result["skipped"] += 1
                continue

            result["checked"] += 1
            try:
                if trade.market_id not in markets:
                    fetched = await ProviderResult.capture(
                        self._loop.polymarket.get_market(trade.market_id), source="gamma"
                    )
                    if not fetched.ok:
                        logger.warning(
                            "Could not fetch market for resolution",
                            market_id=trade.market_id,
                            error=fetched.error,
                        )
                    markets[trade.market_id] = fetched.value
                market = markets[trade.market_id]
                if market is None or not market.closed:
                    continue
                winner = winning_outcome(market)
                if winner is None:
                    logger.info("Market closed without a clear winner yet", market_id=trade.market_id)
                    continue
                if await self._loop.resolve_trade(trade, winner):
                    result["closed"] += 1
            except Exception as e:
                logger.error("Error resolving trade", trade_id=trade.id, error=str(e))
            await asyncio.sleep(settings.RESOLVER_ITEM_GAP_SECONDS)

        if result["checked"] or result["closed"]:
            logger.info("AI trade resolution check", **result)
        return result


class TradingLoop:
    def __init__(
        self,
        polymarket: PolymarketClient,
        execution: ExecutionClient,
        ledger: BudgetLedger,
        risk_gate: RiskGate,
        advisor: AdvisoryClient,
        event_bus: EventBus,
        session_factory=AsyncSessionLocal,
    ):
        self.polymarket = polymarket
        self.execution = execution
        self.ledger = ledger
        self.risk_gate = risk_gate
        self.advisor = advisor
        self.event_bus = event_bus
        self._session_factory = session_factory
        self._resolver = ResolutionScheduler(AITradeResolutionTarget(self))
        self._task: Optional[asyncio.Task] = None
        self._interval_minutes: Optional[int] = None
        self._last_cycle_at: Optional[datetime] = None
        self._last_cycle: Optional[dict] = None

    @property
    def resolver(self) -> ResolutionScheduler:
        return self._resolver

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ==================== LIFECYCLE ====================

    async def start(self) -> bool:
        if self.is_running:
            logger.info("Trading loop already running")
            return False
        app_config = await self.ledger.get_app_config()
        interval = (
            app_config.analysis_interval_minutes
            if app_config and app_config.analysis_interval_minutes
            else DEFAULT_ANALYSIS_INTERVAL_MINUTES
        )
        self._interval_minutes = int(interval)
        self._task = asyncio.create_task(self._loop(self._interval_minutes * 60), name="trading_loop")
        logger.info("Trading loop started", interval_minutes=self._interval_minutes)
        return True

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Trading loop stopped")

    async def shutdown(self) -> None:
        await self.stop()
        await self._resolver.stop()

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Trading cycle failed", error=str(e))
                self.event_bus.publish("error", {"source": "trading_loop", "error": str(e)})
            await asyncio.sleep(interval_seconds)

    async def run_cycle(self) -> dict:
        summary = {
            "resolution": await self.resolve_expired_trades(),
            "trading_enabled": False,
            "reconciled": 0,
            "analyzed": 0,
            "errors": 0,
        }
        self._last_cycle_at = utcnow()
        self._last_cycle = summary

        if not await self.ledger.is_trading_enabled():
            logger.debug("Trading disabled, cycle ends after resolution")
            return summary
        summary["trading_enabled"] = True
        summary["reconciled"] = await self.reconcile_pending_trades()

        now = utcnow()
        markets = [
            m for m in await self.list_markets(active_only=True)
            if m.end_date is None or m.end_date > now
        ]
        logger.info("Trading cycle started", markets=len(markets))

        for index, market in enumerate(markets):
            try:
                await self.update_price_history(market)
                outcome = await self.analyze_and_trade(market)
                if outcome.get("analyzed"):
                    summary["analyzed"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error("Error processing market", market_id=market.market_id, error=str(e))
                self.event_bus.publish(
                    "error",
                    {"source": "trading_loop", "market_id": market.market_id, "error": str(e)},
                )
            if index < len(markets) - 1:
                await asyncio.sleep(settings.TRADING_INTER_MARKET_DELAY_SECONDS)

        logger.info("Trading cycle complete", **{k: v for k, v in summary.items() if k != "resolution"})
        return summary

    # ==================== RESOLUTION ====================

    async def deactivate_expired_markets(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(MonitoredMarket)
                .where(
                    MonitoredMarket.is_active.is_(True),
                    MonitoredMarket.end_date.is_not(None),
                    MonitoredMarket.end_date < utcnow(),
                )
                .values(is_active=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info("Deactivated expired markets", count=result.rowcount)
        return result.rowcount or 0

    async def resolve_expired_trades(self, force_all: bool = False) -> dict:
        """Settle closed markets now; leave the rest to the scheduler."""
        await self.deactivate_expired_markets()
        result = await self._resolver.check_now(force_all=force_all)
        if await self._resolver.next_delay() is not None:
            await self._resolver.start()
        return result

    async def resolve_trade(self, trade: Trade, winner: str) -> bool:
        won = trade.outcome == winner
        pnl = resolution_pnl(float(trade.size), float(trade.price or 0.0), won)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Trade)
                .where(Trade.id == trade.id, Trade.status == TradeStatus.EXECUTED.value)
                .values(
                    status=TradeStatus.RESOLVED.value,
                    resolved_outcome=winner,
                    resolved_at=utcnow(),
                    pnl=pnl,
                )
            )
            await session.commit()
        if not result.rowcount:
            return False

        await self.ledger.update_budget(0.0, pnl)
        logger.info(
            "Trade resolved",
            trade_id=trade.id,
            market_id=trade.market_id,
            outcome=trade.outcome,
            winner=winner,
            pnl=round(pnl, 4),
        )
        self.event_bus.publish(
            "trade:resolved",
            {
                "trade_id": trade.id,
                "market_id": trade.market_id,
                "outcome": trade.outcome,
                "winning_outcome": winner,
                "won": won,
                "pnl": pnl,
            },
        )
        return True

    async def reconcile_pending_trades(self) -> int:
        """Promote live orders the exchange has filled; release cancelled ones."""
        async with self._session_factory() as session:
            pending = (
                await session.execute(
                    select(Trade).where(
                        Trade.status == TradeStatus.PENDING.value,
                        Trade.order_id.is_not(None),
                    )
                )
            ).scalars().all()

        changed = 0
        for trade in pending:
            status = await self.execution.get_order_status(trade.order_id)
            if not status.ok:
                logger.warning("Order status unavailable", trade_id=trade.id, error=status.error)
                continue
            if status.value == OrderStatus.FILLED:
                values = {"status": TradeStatus.EXECUTED.value, "executed_at": utcnow()}
            elif status.value == OrderStatus.CANCELLED:
                values = {"status": TradeStatus.CANCELLED.value}
            else:
                continue

            async with self._session_factory() as session:
                result = await session.execute(
                    update(Trade)
                    .where(Trade.id == trade.id, Trade.status == TradeStatus.PENDING.value)
                    .values(**values)
                )
                await session.commit()
            if not result.rowcount:
                continue
            changed += 1
            if values["status"] == TradeStatus.CANCELLED.value:
                await self.ledger.release_spend(float(trade.size))
            logger.info("Pending trade reconciled", trade_id=trade.id, status=values["status"])
        return changed

    # ==================== MARKET DATA ====================

    async def list_markets(self, active_only: bool = False) -> list[MonitoredMarket]:
        query = select(MonitoredMarket).order_by(MonitoredMarket.created_at.desc())
        if active_only:
            query = query.where(MonitoredMarket.is_active.is_(True))
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def get_monitored_market(self, market_id: str) -> Optional[MonitoredMarket]:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(MonitoredMarket).where(MonitoredMarket.market_id == market_id)
                )
            ).scalar_one_or_none()

    async def add_market(
        self,
        market_id: str,
        condition_id: Optional[str] = None,
        question: Optional[str] = None,
        slug: Optional[str] = None,
        end_date: Optional[datetime] = None,
    ) -> tuple[MonitoredMarket, bool]:
        """Start monitoring a market. Returns ``(market, reactivated)``."""
        existing = await self.get_monitored_market(market_id)
        if existing is not None:
            if existing.is_active:
                raise MarketAlreadyMonitored(market_id)
            return await self.set_market_active(market_id, True), True

        fetched = await ProviderResult.capture(self.polymarket.get_market(market_id), source="gamma")
        gamma = fetched.value if fetched.ok else None
        if gamma is None:
            logger.warning("Could not fetch CLOB token ids", market_id=market_id, error=fetched.error)

        async with self._session_factory() as session:
            market = MonitoredMarket(
                market_id=market_id,
                condition_id=condition_id or (gamma.condition_id if gamma else None),
                clob_token_ids=list(gamma.clob_token_ids) if gamma and gamma.clob_token_ids else None,
                question=question or (gamma.question if gamma else "") or market_id,
                slug=slug or (gamma.slug if gamma else None),
                end_date=end_date or (gamma.end_date if gamma else None),
                is_active=True,
            )
            session.add(market)
            await session.commit()
            await session.refresh(market)
        logger.info("Market added to monitoring", market_id=market_id)
        return market, False

    async def set_market_active(self, market_id: str, is_active: bool) -> MonitoredMarket:
        async with self._session_factory() as session:
            market = (
                await session.execute(
                    select(MonitoredMarket).where(MonitoredMarket.market_id == market_id)
                )
            ).scalar_one_or_none()
            if market is None:
                raise MarketNotMonitored(market_id)
            market.is_active = bool(is_active)
            await session.commit()
            await session.refresh(market)
        return market

    async def update_price_history(self, market: MonitoredMarket) -> int:
        """Best-effort refresh of the cached YES/NO series."""
        token_id = market.yes_token_id
        if not token_id:
            return 0
        result = await ProviderResult.capture(
            self.polymarket.get_price_history(
                token_id,
                interval=settings.PRICE_HISTORY_INTERVAL,
                fidelity=settings.PRICE_HISTORY_FIDELITY,
            ),
            source="clob",
        )
        if not result.ok:
            logger.warning("Price history refresh failed", market_id=market.market_id, error=result.error)
            return 0
        if not result.value:
            return 0

        rows = [
            {
                "market_id": market.market_id,
                "timestamp": point.timestamp,
                "yes_price": point.price,
                "no_price": 1.0 - point.price,
            }
            for point in result.value
        ]
        async with self._session_factory() as session:
            await session.execute(
                sqlite_upsert(PriceHistory)
                .values(rows)
                .on_conflict_do_nothing(index_elements=["market_id", "timestamp"])
            )
            await session.commit()
        return len(rows)

    async def get_price_history(self, market_id: str, limit: int = 500) -> list[PriceHistory]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(PriceHistory)
                    .where(PriceHistory.market_id == market_id)
                    .order_by(PriceHistory.timestamp.desc())
                    .limit(limit)
                )
            ).scalars().all()
        return list(reversed(rows))

    async def _open_position(self, market_id: str) -> Optional[Trade]:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(Trade)
                    .where(
                        Trade.market_id == market_id,
                        Trade.status == TradeStatus.EXECUTED.value,
                        Trade.side == TradeSide.BUY.value,
                    )
                    .order_by(Trade.created_at.desc(), Trade.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

    async def _current_yes_price(
        self, token_id: Optional[str], gamma: Optional[GammaMarket]
    ) -> Optional[float]:
        if token_id:
            book = await ProviderResult.capture(self.polymarket.get_order_book(token_id), source="clob")
            if book.ok and book.value.is_two_sided and 0 < book.value.mid < 1:
                return book.value.mid
        if gamma is not None and is_valid_price(gamma.yes_price):
            return gamma.yes_price
        return None

    async def build_snapshot(self, market: MonitoredMarket) -> Optional[MarketSnapshot]:
        """Current prices, stats and held position; None when unpriceable."""
        fetched = await ProviderResult.capture(self.polymarket.get_market(market.market_id), source="gamma")
        gamma = fetched.value if fetched.ok else None
        if gamma is None:
            logger.warning("Market details unavailable", market_id=market.market_id, error=fetched.error)

        token_id = market.yes_token_id or (gamma.yes_token_id if gamma else None)
        yes_price = await self._current_yes_price(token_id, gamma)
        if yes_price is None:
            return None
        no_price = 1.0 - yes_price
        if gamma is not None and token_id is None and is_valid_price(gamma.no_price):
            no_price = gamma.no_price

        end_date = market.end_date or (gamma.end_date if gamma else None)
        hours_remaining = 0.0
        if end_date is not None:
            hours_remaining = max(0.0, (end_date - utcnow()).total_seconds() / 3600.0)

        position = None
        trade = await self._open_position(market.market_id)
        if trade is not None and trade.price:
            current = yes_price if trade.outcome == TradeOutcome.YES.value else no_price
            shares = float(trade.size) / float(trade.price)
            current_value = shares * current
            position = PositionInfo(
                outcome=trade.outcome,
                size=float(trade.size),
                entry_price=float(trade.price),
                shares=shares,
                current_price=current,
                current_value=current_value,
                unrealized_pnl=current_value - float(trade.size),
            )

        return MarketSnapshot(
            market_id=market.market_id,
            question=market.question or (gamma.question if gamma else ""),
            yes_price=yes_price,
            no_price=no_price,
            volume_24h=gamma.volume_24h if gamma else 0.0,
            liquidity=gamma.liquidity if gamma else 0.0,
            hours_remaining=hours_remaining,
            condition_id=market.condition_id or (gamma.condition_id if gamma else ""),
            end_date=end_date.isoformat() if end_date else None,
            position=position,
        )

    # ==================== ANALYZE & TRADE ====================

    async def analyze_market(self, market_id: str) -> dict:
        """Manual analysis: skips the cooldown; trades only when trading is enabled."""
        market = await self.get_monitored_market(market_id)
        if market is None:
            raise MarketNotMonitored(market_id)
        allow_trading = await self.ledger.is_trading_enabled()
        return await self.analyze_and_trade(market, respect_cooldown=False, allow_trading=allow_trading)

    async def analyze_and_trade(
        self,
        market: MonitoredMarket,
        respect_cooldown: bool = True,
        allow_trading: bool = True,
    ) -> dict:
        market_id = market.market_id
        if respect_cooldown and not await self.ledger.should_analyze_market(market_id):
            return {"market_id": market_id, "analyzed": False, "reason": "cooldown"}

        risk = await self.ledger.get_risk_config()
        if risk is None:
            raise RuntimeError("Risk configuration not found")

        snapshot = await self.build_snapshot(market)
        if snapshot is None:
            logger.warning("No usable price, skipping market", market_id=market_id)
            return {"market_id": market_id, "analyzed": False, "reason": "no price"}

        constraints = RiskConstraints(
            max_bet_size=float(risk.max_bet_size),
            min_confidence=float(risk.min_confidence_threshold),
        )
        advisory = await self.advisor.analyze(snapshot, constraints)
        decision = advisory.decision

        log_id = await self._log_analysis(snapshot, advisory.prompt, decision, advisory.provider)
        self.event_bus.publish(
            "analysis:complete",
            {
                "market_id": market_id,
                "question": snapshot.question,
                "decision": decision.decision.value,
                "confidence": decision.confidence,
                "reasoning": decision.reasoning,
                "provider": advisory.provider,
                "ok": advisory.ok,
            },
        )

        if not advisory.ok:
            logger.warning("Market could not be analyzed", market_id=market_id, errors=advisory.errors)
            self.event_bus.publish(
                "error",
                {"source": "advisory", "market_id": market_id, "error": "; ".join(advisory.errors)},
            )
            return {"market_id": market_id, "analyzed": False, "reason": "advisory failed"}

        await self.ledger.record_analysis(market_id)
        result = {"market_id": market_id, "analyzed": True, "decision": decision.to_dict()}
        if not allow_trading or decision.decision == Decision.HOLD:
            return result

        if decision.decision == Decision.SELL:
            trade = await self._open_position(market_id)
            if trade is not None:
                result["sell"] = await self._execute_sell(market, snapshot, trade, decision)
            return result

        outcome = TradeOutcome.YES if decision.decision == Decision.BUY_YES else TradeOutcome.NO
        risk_decision = await self.risk_gate.validate_trade(
            market_id, decision.suggested_size, decision.confidence
        )
        result["risk"] = risk_decision.to_dict()
        if not risk_decision.approved:
            logger.info("Trade rejected by risk gate", market_id=market_id, reason=risk_decision.reason)
            return result

        trade = await self._execute_buy(
            market, snapshot, outcome, risk_decision.adjusted_size, decision.reasoning
        )
        result["trade"] = trade_to_dict(trade)
        await self._link_analysis(log_id, trade.id)
        return result

    async def _log_analysis(
        self,
        snapshot: MarketSnapshot,
        prompt: str,
        decision: AdvisoryDecision,
        provider: Optional[str],
    ) -> int:
        async with self._session_factory() as session:
            log = AnalysisLog(
                market_id=snapshot.market_id,
                market_data=json.dumps(snapshot.to_dict(), default=str),
                prompt=prompt,
                response=json.dumps(decision.to_dict()),
                decision=decision.decision.value,
                confidence=decision.confidence,
                provider=provider,
            )
            session.add(log)
            await session.commit()
            await session.refresh(log)
            return log.id

    async def _link_analysis(self, log_id: int, trade_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(AnalysisLog).where(AnalysisLog.id == log_id).values(trade_id=trade_id)
            )
            await session.commit()

    async def _execute_buy(
        self,
        market: MonitoredMarket,
        snapshot: MarketSnapshot,
        outcome: TradeOutcome,
        size: float,
        reasoning: str,
    ) -> Trade:
        paper = await self.ledger.is_paper_trading_mode()
        price = snapshot.yes_price if outcome == TradeOutcome.YES else snapshot.no_price
        token_id = market.yes_token_id if outcome == TradeOutcome.YES else market.no_token_id

        result = await self.execution.place_market_order(
            token_id or "", OrderSide.BUY, size, paper=paper, quoted_price=price
        )
        if not result.ok:
            logger.error("Trade execution failed", market_id=market.market_id, error=result.error)
            async with self._session_factory() as session:
                failed = Trade(
                    market_id=market.market_id,
                    side=TradeSide.BUY.value,
                    outcome=outcome.value,
                    size=size,
                    price=price,
                    status=TradeStatus.FAILED.value,
                    claude_reasoning=reasoning,
                    is_paper_trade=paper,
                    error_message=result.error,
                )
                session.add(failed)
                await session.commit()
                await session.refresh(failed)
            self.event_bus.publish(
                "error",
                {"source": "execution", "market_id": market.market_id, "error": result.error},
            )
            return failed

        receipt = result.value
        filled = receipt.status == OrderStatus.FILLED
        async with self._session_factory() as session:
            trade = Trade(
                market_id=market.market_id,
                order_id=receipt.order_id,
                side=TradeSide.BUY.value,
                outcome=outcome.value,
                size=size,
                price=receipt.price or price,
                status=TradeStatus.EXECUTED.value if filled else TradeStatus.PENDING.value,
                claude_reasoning=reasoning,
                is_paper_trade=receipt.is_paper,
                executed_at=utcnow() if filled else None,
            )
            session.add(trade)
            await session.commit()
            await session.refresh(trade)

        await self.ledger.update_budget(size, 0.0)
        logger.info(
            "[PAPER] Trade executed" if receipt.is_paper else "[LIVE] Trade submitted",
            market_id=market.market_id,
            outcome=outcome.value,
            size=size,
            price=trade.price,
            order_id=receipt.order_id,
        )
        self.event_bus.publish(
            "trade:executed",
            {
                "trade_id": trade.id,
                "market_id": market.market_id,
                "question": market.question,
                "order_id": receipt.order_id,
                "side": TradeSide.BUY.value,
                "outcome": outcome.value,
                "size": size,
                "price": trade.price,
                "status": trade.status,
                "is_paper_trade": receipt.is_paper,
                "reasoning": reasoning,
            },
        )
        return trade

    async def _execute_sell(
        self,
        market: MonitoredMarket,
        snapshot: MarketSnapshot,
        trade: Trade,
        decision: AdvisoryDecision,
    ) -> dict:
        price = snapshot.yes_price if trade.outcome == TradeOutcome.YES.value else snapshot.no_price
        shares = float(trade.size) / float(trade.price)
        realized = shares * price - float(trade.size)

        if not trade.is_paper_trade:
            token_id = (
                market.yes_token_id if trade.outcome == TradeOutcome.YES.value else market.no_token_id
            )
            result = await self.execution.place_market_order(
                token_id or "", OrderSide.SELL, shares, paper=False, quoted_price=price
            )
            if not result.ok:
                logger.error("Live sell failed, position kept", trade_id=trade.id, error=result.error)
                self.event_bus.publish(
                    "error",
                    {"source": "execution", "market_id": market.market_id, "error": result.error},
                )
                return {"sold": False, "error": result.error}

        async with self._session_factory() as session:
            updated = await session.execute(
                update(Trade)
                .where(Trade.id == trade.id, Trade.status == TradeStatus.EXECUTED.value)
                .values(
                    status=TradeStatus.RESOLVED.value,
                    resolved_outcome=f"SOLD_{trade.outcome}",
                    resolved_at=utcnow(),
                    pnl=realized,
                )
            )
            await session.commit()
        if not updated.rowcount:
            return {"sold": False, "error": "Position already closed"}

        await self.ledger.update_budget(0.0, realized)
        logger.info(
            "Position sold",
            trade_id=trade.id,
            market_id=market.market_id,
            exit_price=price,
            realized_pnl=round(realized, 4),
        )
        self.event_bus.publish(
            "trade:sold",
            {
                "trade_id": trade.id,
                "market_id": market.market_id,
                "question": market.question,
                "outcome": trade.outcome,
                "shares": shares,
                "entry_price": float(trade.price),
                "exit_price": price,
                "realized_pnl": realized,
                "is_paper_trade": bool(trade.is_paper_trade),
                "reasoning": decision.reasoning,
            },
        )
        return {"sold": True, "trade_id": trade.id, "exit_price": price, "realized_pnl": realized}

    async def execute_manual_trade(self, market_id: str, outcome: TradeOutcome, size: float) -> dict:
        """Risk-checked one-off BUY on a monitored market."""
        market = await self.get_monitored_market(market_id)
        if market is None:
            raise MarketNotMonitored(market_id)

        risk_decision = await self.risk_gate.validate_trade(market_id, size, 1.0)
        if not risk_decision.approved:
            return {"executed": False, "risk": risk_decision.to_dict()}

        snapshot = await self.build_snapshot(market)
        if snapshot is None:
            return {"executed": False, "risk": risk_decision.to_dict(), "error": "No usable price"}

        trade = await self._execute_buy(
            market, snapshot, outcome, risk_decision.adjusted_size, "Manual trade"
        )
        return {
            "executed": trade.status != TradeStatus.FAILED.value,
            "risk": risk_decision.to_dict(),
            "trade": trade_to_dict(trade),
        }

    # ==================== READS ====================

    async def list_trades(
        self,
        status: Optional[TradeStatus] = None,
        market_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Trade]:
        query = select(Trade).order_by(Trade.created_at.desc(), Trade.id.desc()).limit(limit)
        if status is not None:
            query = query.where(Trade.status == status.value)
        if market_id:
            query = query.where(Trade.market_id == market_id)
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def list_analyses(self, market_id: Optional[str] = None, limit: int = 50) -> list[AnalysisLog]:
        query = (
            select(AnalysisLog)
            .order_by(AnalysisLog.created_at.desc(), AnalysisLog.id.desc())
            .limit(limit)
        )
        if market_id:
            query = query.where(AnalysisLog.market_id == market_id)
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def get_status(self) -> dict:
        return {
            "is_running": self.is_running,
            "interval_minutes": self._interval_minutes,
            "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
            "last_cycle": self._last_cycle,
            "advisory_providers": self.advisor.provider_names,
            "execution": self.execution.get_status(),
            "resolver": self._resolver.get_status(),
        }
