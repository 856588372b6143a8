"""
Spread Service - arbitrage across mutually-exclusive outcomes

If buying one share of every outcome costs less than the guaranteed
payout (1.0), holding the full set locks in the difference regardless
of how the market resolves.

Two detectors:
- SINGLE: one binary market, YES + NO < 1
- MULTI: one event, sum of each constituent market's YES price < 1

Pipeline: scan -> persist/dedupe -> (optional) auto-execute -> resolve.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update

from config import settings
from models.database import (
    AsyncSessionLocal,
    SpreadOpportunity,
    SpreadTrade,
    SpreadTradeStatus,
    SpreadType,
    model_to_dict,
)
from models.market import GammaEvent, GammaMarket, is_valid_price
from models.results import ProviderResult
from services.event_bus import EventBus
from services.execution import ExecutionClient, OrderSide
from services.ledger import BudgetLedger
from services.polymarket import PolymarketClient
from services.resolution import ResolutionScheduler, empty_check_result, is_past_due
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("spread")

GUARANTEED_PAYOUT = 1.0


class OpportunityNotFound(LookupError):
    pass


class SpreadConfigMissing(LookupError):
    def __init__(self):
        super().__init__("Spread configuration not found")


@dataclass
class SpreadCandidate:
    """A detected (not yet persisted) spread"""

    opportunity_type: SpreadType
    question: str
    outcomes: list[str]
    prices: list[float]
    token_ids: list[str] = field(default_factory=list)
    market_id: Optional[str] = None
    event_id: Optional[str] = None
    condition_id: Optional[str] = None
    slug: Optional[str] = None
    liquidity: Optional[float] = None
    volume_24h: Optional[float] = None
    end_date: Optional[datetime] = None

    @property
    def total_cost(self) -> float:
        return sum(self.prices)

    @property
    def spread_profit(self) -> float:
        return GUARANTEED_PAYOUT - self.total_cost

    @property
    def spread_pct(self) -> float:
        return self.spread_profit / self.total_cost

    @property
    def key(self) -> Optional[str]:
        return self.market_id if self.opportunity_type == SpreadType.SINGLE else self.event_id


def expected_profit_for(spread_pct: float, total_investment: float) -> float:
    """Profit locked in when ``total_investment`` is spread over a full outcome set.

    pct * T / (1 + pct) simplifies to T * (1 - total_cost).
    """
    return spread_pct * total_investment / (1.0 + spread_pct)


# ==================== DETECTORS ====================


def detect_single_market(market: GammaMarket) -> Optional[SpreadCandidate]:
    """YES + NO priced below the payout on one binary market"""
    # Unkeyed quotes cannot be matched to a stored opportunity
    if not market.id:
        return None
    prices = market.outcome_prices
    if len(prices) < 2:
        return None
    yes_price, no_price = prices[0], prices[1]
    if not (is_valid_price(yes_price) and is_valid_price(no_price)):
        return None

    candidate = SpreadCandidate(
        opportunity_type=SpreadType.SINGLE,
        question=market.question or "Unknown",
        outcomes=["Yes", "No"],
        prices=[yes_price, no_price],
        token_ids=list(market.clob_token_ids[:2]),
        market_id=market.id,
        condition_id=market.condition_id or None,
        slug=market.slug or None,
        liquidity=market.liquidity or None,
        volume_24h=market.volume_24h or None,
        end_date=market.end_date,
    )
    if candidate.spread_profit <= 0:
        return None
    return candidate


def detect_multi_outcome_event(event: GammaEvent) -> Optional[SpreadCandidate]:
    """Leading outcome of every constituent market priced below the payout"""
    if not event.id or len(event.markets) < 2:
        return None

    outcomes: list[str] = []
    prices: list[float] = []
    token_ids: list[str] = []
    min_liquidity: Optional[float] = None
    earliest_end: Optional[datetime] = None

    for market in event.markets:
        price = market.yes_price
        # One unpriceable leg means the full set cannot be bought
        if not is_valid_price(price):
            return None
        outcomes.append(market.label or "Unknown")
        prices.append(price)
        if market.yes_token_id:
            token_ids.append(market.yes_token_id)
        if market.liquidity:
            min_liquidity = (
                market.liquidity if min_liquidity is None else min(min_liquidity, market.liquidity)
            )
        if market.end_date and (earliest_end is None or market.end_date < earliest_end):
            earliest_end = market.end_date

    candidate = SpreadCandidate(
        opportunity_type=SpreadType.MULTI,
        question=event.title or "Unknown Event",
        outcomes=outcomes,
        prices=prices,
        token_ids=token_ids if len(token_ids) == len(prices) else [],
        event_id=event.id,
        slug=event.slug or None,
        liquidity=min_liquidity,
        end_date=earliest_end or event.end_date,
    )
    if candidate.spread_profit <= 0:
        return None
    return candidate


def opportunity_to_dict(opp: SpreadOpportunity) -> dict:
    data = model_to_dict(opp)
    data["num_outcomes"] = opp.num_outcomes
    return data


def spread_trade_to_dict(trade: SpreadTrade) -> dict:
    return model_to_dict(trade)


# ==================== RESOLUTION ====================


class SpreadResolutionTarget:
    """Closes OPEN spread trades once their market or event is closed"""

    name = "spread"

    def __init__(self, service: "SpreadService"):
        self._service = service

    async def list_open(self) -> list[SpreadTrade]:
        return await self._service.list_trades(status=SpreadTradeStatus.OPEN)

    async def check(self, force_all: bool = False) -> dict:
        result = empty_check_result()
        now = utcnow()
        for trade in await self.list_open():
            if not force_all and trade.end_date is not None and not is_past_due(trade.end_date, now):
                result["skipped"] += 1
                continue

            result["checked"] += 1
            try:
                if await self._service.is_trade_settled(trade):
                    if await self._service.close_trade(trade):
                        result["closed"] += 1
            except Exception as e:
                logger.error("Error checking spread trade", trade_id=trade.id, error=str(e))
            await asyncio.sleep(settings.RESOLVER_ITEM_GAP_SECONDS)

        if result["checked"] or result["closed"]:
            logger.info("Spread resolution check", **result)
        return result


# ==================== SERVICE ====================


class SpreadService:
    def __init__(
        self,
        polymarket: PolymarketClient,
        execution: ExecutionClient,
        ledger: BudgetLedger,
        event_bus: EventBus,
        session_factory=AsyncSessionLocal,
    ):
        self.polymarket = polymarket
        self.execution = execution
        self.ledger = ledger
        self.event_bus = event_bus
        self._session_factory = session_factory
        self.resolver = ResolutionScheduler(SpreadResolutionTarget(self))
        self._task: Optional[asyncio.Task] = None
        self._last_scan: Optional[dict] = None
        self._last_scan_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ==================== SCANNING ====================

    async def scan_single_markets(self) -> list[SpreadCandidate]:
        result = await ProviderResult.capture(
            self.polymarket.get_markets(
                active=True, closed=False, limit=settings.SPREAD_MARKET_SCAN_LIMIT
            ),
            source="gamma",
        )
        if not result.ok:
            logger.error("Failed to scan single markets", error=result.error)
            return []
        candidates = []
        for market in result.value:
            candidate = detect_single_market(market)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    async def scan_multi_outcome_events(self) -> list[SpreadCandidate]:
        result = await ProviderResult.capture(
            self.polymarket.get_events(
                active=True, closed=False, limit=settings.SPREAD_EVENT_SCAN_LIMIT
            ),
            source="gamma",
        )
        if not result.ok:
            logger.error("Failed to scan multi-outcome events", error=result.error)
            return []
        candidates = []
        for event in result.value:
            candidate = detect_multi_outcome_event(event)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    async def scan_all(self) -> dict:
        """Run both detectors, persist survivors and retire stale quotes."""
        config = await self.ledger.get_spread_config()
        if config is None:
            error = str(SpreadConfigMissing())
            logger.error("Spread scan aborted", error=error)
            return {"single": 0, "multi": 0, "total": 0, "error": error}
        min_threshold = float(config.min_spread_threshold)
        scan_multi = bool(config.scan_multi_outcome)

        if scan_multi:
            single, multi = await asyncio.gather(
                self.scan_single_markets(), self.scan_multi_outcome_events()
            )
        else:
            single, multi = await self.scan_single_markets(), []

        single = [c for c in single if c.spread_pct > min_threshold]
        multi = [c for c in multi if c.spread_pct > min_threshold]

        inserted = 0
        for candidate in [*single, *multi]:
            if await self._upsert_opportunity(candidate):
                inserted += 1
        deactivated = await self._deactivate_stale()

        result = {"single": len(single), "multi": len(multi), "total": len(single) + len(multi)}
        self._last_scan = result
        self._last_scan_at = utcnow()
        logger.info("Spread scan complete", new=inserted, deactivated=deactivated, **result)
        self.event_bus.publish("scan_complete", result)

        if config.auto_execute and result["total"]:
            await self._auto_execute(float(config.max_spread_bet_size))
        return result

    async def _upsert_opportunity(self, candidate: SpreadCandidate) -> bool:
        """Refresh the existing row for this market/event or insert one. True if inserted."""
        now = utcnow()
        type_value = candidate.opportunity_type.value
        key_column = (
            SpreadOpportunity.market_id
            if candidate.opportunity_type == SpreadType.SINGLE
            else SpreadOpportunity.event_id
        )
        async with self._session_factory() as session:
            existing = (
                await session.execute(
                    select(SpreadOpportunity)
                    .where(
                        SpreadOpportunity.opportunity_type == type_value,
                        key_column == candidate.key,
                    )
                    .order_by(SpreadOpportunity.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

            if existing is not None:
                existing.outcomes = candidate.outcomes
                existing.prices = candidate.prices
                if candidate.token_ids:
                    existing.token_ids = candidate.token_ids
                existing.total_cost = candidate.total_cost
                existing.spread_profit = candidate.spread_profit
                existing.spread_pct = candidate.spread_pct
                existing.liquidity = candidate.liquidity
                existing.volume_24h = candidate.volume_24h
                existing.end_date = candidate.end_date
                existing.is_active = True
                existing.last_seen_at = now
                await session.commit()
                return False

            session.add(
                SpreadOpportunity(
                    opportunity_type=type_value,
                    market_id=candidate.market_id,
                    event_id=candidate.event_id,
                    condition_id=candidate.condition_id,
                    question=candidate.question,
                    slug=candidate.slug,
                    outcomes=candidate.outcomes,
                    prices=candidate.prices,
                    token_ids=candidate.token_ids,
                    total_cost=candidate.total_cost,
                    guaranteed_payout=GUARANTEED_PAYOUT,
                    spread_profit=candidate.spread_profit,
                    spread_pct=candidate.spread_pct,
                    liquidity=candidate.liquidity,
                    volume_24h=candidate.volume_24h,
                    end_date=candidate.end_date,
                    is_active=True,
                    discovered_at=now,
                    last_seen_at=now,
                )
            )
            await session.commit()
            return True

    async def _deactivate_stale(self) -> int:
        cutoff = utcnow() - timedelta(seconds=settings.SPREAD_STALE_SECONDS)
        async with self._session_factory() as session:
            result = await session.execute(
                update(SpreadOpportunity)
                .where(
                    SpreadOpportunity.is_active == True,  # noqa: E712
                    SpreadOpportunity.last_seen_at < cutoff,
                )
                .values(is_active=False)
            )
            await session.commit()
            return result.rowcount or 0

    async def _auto_execute(self, size: float) -> None:
        for opp in await self.list_opportunities():
            if await self._has_open_trade_for(opp):
                continue
            try:
                await self.execute_opportunity(opp.id, size)
            except Exception as e:
                logger.error("Auto-execute failed", opportunity_id=opp.id, error=str(e))
                self.event_bus.publish(
                    "error", {"source": "spread", "opportunity_id": opp.id, "error": str(e)}
                )

    async def _has_open_trade_for(self, opp: SpreadOpportunity) -> bool:
        clauses = [SpreadTrade.opportunity_id == opp.id]
        if opp.market_id:
            clauses.append(SpreadTrade.market_id == opp.market_id)
        if opp.event_id:
            clauses.append(SpreadTrade.event_id == opp.event_id)
        async with self._session_factory() as session:
            count = (
                await session.execute(
                    select(func.count(SpreadTrade.id)).where(
                        SpreadTrade.status == SpreadTradeStatus.OPEN.value, or_(*clauses)
                    )
                )
            ).scalar_one()
        return bool(count)

    # ==================== EXECUTION ====================

    async def execute_opportunity(self, opportunity_id: int, total_investment: float) -> dict:
        """
        Buy every outcome of an active opportunity.

        Live orders are attempted only outside paper mode. If any leg fails
        the whole trade is recorded as paper; ``is_paper_trade`` is fixed at
        this point and never changes afterwards.
        """
        if total_investment is None or total_investment <= 0:
            raise ValueError("Investment must be positive")

        async with self._session_factory() as session:
            opp = (
                await session.execute(
                    select(SpreadOpportunity).where(
                        SpreadOpportunity.id == opportunity_id,
                        SpreadOpportunity.is_active == True,  # noqa: E712
                    )
                )
            ).scalar_one_or_none()
        if opp is None:
            raise OpportunityNotFound("Opportunity not found or no longer active")

        num_outcomes = max(opp.num_outcomes, len(opp.outcomes or []))
        size_per_outcome = total_investment / num_outcomes
        paper_mode = await self.ledger.is_paper_trading_mode()

        order_ids: Optional[list[str]] = None
        if not paper_mode:
            order_ids = await self._place_live_orders(opp, size_per_outcome)
        is_paper = order_ids is None
        if is_paper:
            stamp = int(time.time() * 1000)
            order_ids = [f"PAPER_SPREAD_{stamp}_{i}" for i in range(num_outcomes)]

        expected_profit = expected_profit_for(float(opp.spread_pct), total_investment)

        async with self._session_factory() as session:
            trade = SpreadTrade(
                opportunity_id=opp.id,
                opportunity_type=opp.opportunity_type,
                market_id=opp.market_id,
                event_id=opp.event_id,
                condition_id=opp.condition_id,
                question=opp.question,
                slug=opp.slug,
                outcomes=list(opp.outcomes or []),
                end_date=opp.end_date,
                total_cost=opp.total_cost,
                guaranteed_payout=opp.guaranteed_payout,
                expected_profit=expected_profit,
                size_per_outcome=size_per_outcome,
                num_outcomes=num_outcomes,
                total_invested=total_investment,
                order_ids=order_ids,
                status=SpreadTradeStatus.OPEN.value,
                is_paper_trade=is_paper,
            )
            session.add(trade)
            await session.commit()
            await session.refresh(trade)

        await self.ledger.update_budget(total_investment, 0.0)

        payload = {
            "trade_id": trade.id,
            "opportunity_id": opp.id,
            "question": opp.question,
            "type": opp.opportunity_type,
            "outcomes": list(opp.outcomes or []),
            "total_investment": total_investment,
            "expected_profit": expected_profit,
            "spread_pct": float(opp.spread_pct),
            "order_ids": order_ids,
            "is_paper_trade": is_paper,
        }
        logger.info(
            "[PAPER] Spread executed" if is_paper else "[LIVE] Spread executed",
            question=(opp.question or "")[:60],
            total_investment=total_investment,
            expected_profit=round(expected_profit, 4),
        )
        self.event_bus.publish("trade_executed", payload)

        await self.start_resolver()
        return payload

    async def _resolve_token_ids(self, opp: SpreadOpportunity) -> list[str]:
        token_ids = [t for t in (opp.token_ids or []) if t]
        if token_ids and len(token_ids) == opp.num_outcomes:
            return token_ids
        if opp.opportunity_type == SpreadType.SINGLE.value and opp.market_id:
            market = await self.polymarket.get_market(opp.market_id)
            return list(market.clob_token_ids[:2])
        if opp.event_id:
            event = await self.polymarket.get_event(opp.event_id)
            return [m.yes_token_id for m in event.markets if m.yes_token_id]
        return []

    async def _place_live_orders(
        self, opp: SpreadOpportunity, size_per_outcome: float
    ) -> Optional[list[str]]:
        """Exchange order ids for every leg, or None if any leg could not be placed."""
        tokens = await ProviderResult.capture(self._resolve_token_ids(opp), source="gamma")
        if not tokens.ok or len(tokens.value) != opp.num_outcomes:
            logger.warning(
                "Cannot resolve outcome tokens, falling back to paper",
                opportunity_id=opp.id,
                error=tokens.error,
            )
            return None

        order_ids: list[str] = []
        for index, token_id in enumerate(tokens.value):
            if index:
                await asyncio.sleep(settings.SPREAD_ORDER_GAP_SECONDS)
            result = await self.execution.place_market_order(
                token_id, OrderSide.BUY, size_per_outcome, paper=False
            )
            if not result.ok:
                logger.error(
                    "Spread leg failed, recording trade as paper",
                    opportunity_id=opp.id,
                    leg=index,
                    placed_orders=order_ids,
                    error=result.error,
                )
                return None
            order_ids.append(result.value.order_id)
        return order_ids

    # ==================== RESOLUTION ====================

    async def is_trade_settled(self, trade: SpreadTrade) -> bool:
        if trade.market_id:
            market = await self.polymarket.get_market(trade.market_id)
            return market.closed
        if trade.event_id:
            event = await self.polymarket.get_event(trade.event_id)
            return event.closed
        return False

    async def close_trade(self, trade: SpreadTrade) -> bool:
        """Lock in the expected profit. False if another check already closed it."""
        realized_pnl = float(trade.expected_profit)
        async with self._session_factory() as session:
            result = await session.execute(
                update(SpreadTrade)
                .where(
                    SpreadTrade.id == trade.id,
                    SpreadTrade.status == SpreadTradeStatus.OPEN.value,
                )
                .values(
                    status=SpreadTradeStatus.CLOSED.value,
                    realized_pnl=realized_pnl,
                    closed_at=utcnow(),
                )
            )
            await session.commit()
        if not result.rowcount:
            return False

        await self.ledger.update_budget(0.0, realized_pnl)
        logger.info(
            "Spread trade closed",
            trade_id=trade.id,
            question=(trade.question or "")[:60],
            realized_pnl=round(realized_pnl, 4),
        )
        self.event_bus.publish(
            "trade_closed",
            {"id": trade.id, "question": trade.question, "realized_pnl": realized_pnl},
        )
        return True

    async def check_open_trades(self, force_all: bool = False) -> dict:
        return await self.resolver.check_now(force_all=force_all)

    async def start_resolver(self) -> None:
        if await self.list_trades(status=SpreadTradeStatus.OPEN):
            await self.resolver.start()

    # ==================== LIFECYCLE ====================

    async def start(self, interval_seconds: Optional[int] = None) -> bool:
        """Start periodic scanning. Returns False if it was already running."""
        if self.is_running:
            logger.info("Spread scanner already running")
            return False
        if interval_seconds is None:
            config = await self.ledger.get_spread_config()
            if config is None:
                raise SpreadConfigMissing()
            interval_seconds = config.scan_interval_seconds
        self._task = asyncio.create_task(self._scan_loop(int(interval_seconds)), name="spread-scan")
        logger.info("Spread scanner started", interval_seconds=interval_seconds)
        await self.start_resolver()
        return True

    async def stop(self) -> None:
        """Stop scanning; the resolver keeps running while trades are open."""
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Spread scanner stopped")

    async def shutdown(self) -> None:
        await self.stop()
        await self.resolver.stop()

    async def _scan_loop(self, interval_seconds: int) -> None:
        while True:
            try:
                await self.scan_all()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Spread scan error", error=str(e))
                self.event_bus.publish("error", {"source": "spread", "error": str(e)})
            await asyncio.sleep(interval_seconds)

    # ==================== READS ====================

    async def list_opportunities(self, active_only: bool = True) -> list[SpreadOpportunity]:
        query = select(SpreadOpportunity).order_by(SpreadOpportunity.spread_pct.desc())
        if active_only:
            query = query.where(SpreadOpportunity.is_active == True)  # noqa: E712
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def list_trades(
        self, status: Optional[SpreadTradeStatus] = None, limit: Optional[int] = None
    ) -> list[SpreadTrade]:
        query = select(SpreadTrade).order_by(SpreadTrade.created_at.desc(), SpreadTrade.id.desc())
        if status is not None:
            query = query.where(SpreadTrade.status == status.value)
        if limit:
            query = query.limit(limit)
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def get_stats(self) -> dict:
        trades = await self.list_trades()
        open_trades = [t for t in trades if t.status == SpreadTradeStatus.OPEN.value]
        closed_trades = [t for t in trades if t.status == SpreadTradeStatus.CLOSED.value]
        return {
            "total": len(trades),
            "open": len(open_trades),
            "closed": len(closed_trades),
            "total_invested": sum(float(t.total_invested or 0.0) for t in trades),
            "realized_pnl": sum(float(t.realized_pnl or 0.0) for t in closed_trades),
            "expected_profit_open": sum(float(t.expected_profit or 0.0) for t in open_trades),
        }

    async def get_status(self) -> dict:
        opportunities = await self.list_opportunities()
        stats = await self.get_stats()
        return {
            "is_running": self.is_running,
            "is_resolver_running": self.resolver.is_running,
            "opportunity_count": len(opportunities),
            "open_trades": stats["open"],
            "last_scan": self._last_scan,
            "last_scan_at": self._last_scan_at.isoformat() if self._last_scan_at else None,
            "stats": stats,
        }
