"""
Snipe Service - copy the largest recent buys of top leaderboard traders

Loop (every SNIPE_INTERVAL_SECONDS):
1. If snipe is enabled, copy the top positions not already held
2. Mark every open copy to market and close it once the profit target is hit
"""

import asyncio
import random
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update

from config import settings
from models.database import AsyncSessionLocal, SnipedPosition, SnipeStatus, model_to_dict
from models.market import GammaMarket, LeaderboardEntry, TraderActivity, is_valid_price
from models.results import ProviderResult
from services.event_bus import EventBus
from services.execution import ExecutionClient, OrderSide
from services.ledger import BudgetLedger
from services.polymarket import PolymarketClient
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("snipe")

# Absorbs float error so a move from 0.40 to 0.42 meets a 5% target
_TARGET_EPSILON = 1e-9


@dataclass
class TopPosition:
    """A trader's aggregated recent buys of one market outcome"""

    condition_id: str
    outcome: str
    title: str
    slug: str
    total_size: float
    avg_price: float
    source_trader: str
    source_trader_name: str
    latest_timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.latest_timestamp:
            data["latest_timestamp"] = self.latest_timestamp.isoformat()
        return data


def group_trader_fills(trader: LeaderboardEntry, fills: list[TraderActivity]) -> list[TopPosition]:
    """Collapse fills per market outcome with a size-weighted average price."""
    grouped: dict[str, dict] = {}
    for fill in fills:
        key = f"{fill.condition_id}-{fill.outcome}"
        group = grouped.get(key)
        if group is None:
            group = grouped[key] = {
                "fill": fill,
                "total_size": 0.0,
                "weighted_price": 0.0,
                "weight": 0.0,
            }
        size = fill.usdc_size or 0.0
        group["total_size"] += size
        if fill.price > 0:
            group["weighted_price"] += fill.price * size
            group["weight"] += size

    positions = []
    for group in grouped.values():
        fill = group["fill"]
        weight = group["weight"]
        positions.append(
            TopPosition(
                condition_id=fill.condition_id,
                outcome=fill.outcome,
                title=fill.title,
                slug=fill.slug,
                total_size=group["total_size"],
                avg_price=group["weighted_price"] / weight if weight > 0 else 0.0,
                source_trader=trader.address,
                source_trader_name=trader.name,
                latest_timestamp=fill.timestamp,
            )
        )
    return positions


def drift_price(entry_price: float, rand: Callable[[], float]) -> float:
    """Simulated mark for a paper position whose market cannot be priced."""
    change = (rand() - settings.PAPER_DRIFT_CENTER) * settings.PAPER_DRIFT_SCALE
    return max(settings.PAPER_DRIFT_MIN_PRICE, min(settings.PAPER_DRIFT_MAX_PRICE, entry_price + change))


def sniped_position_to_dict(position: SnipedPosition) -> dict:
    data = model_to_dict(position)
    entry = float(position.entry_price or 0.0)
    current = float(position.current_price if position.current_price is not None else entry)
    data["pnl_pct"] = ((current - entry) / entry * 100.0) if entry > 0 else 0.0
    return data


class SnipeService:
    def __init__(
        self,
        polymarket: PolymarketClient,
        execution: ExecutionClient,
        ledger: BudgetLedger,
        event_bus: EventBus,
        session_factory=AsyncSessionLocal,
        rand: Callable[[], float] = random.random,
    ):
        self.polymarket = polymarket
        self.execution = execution
        self.ledger = ledger
        self.event_bus = event_bus
        self._session_factory = session_factory
        self._rand = rand
        self._task: Optional[asyncio.Task] = None
        self._last_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ==================== DISCOVERY ====================

    async def get_top_positions(
        self, category: str = "OVERALL", time_period: str = "DAY"
    ) -> list[TopPosition]:
        """Largest recent buys across the top leaderboard traders"""
        leaderboard = await ProviderResult.capture(
            self.polymarket.get_leaderboard(
                limit=settings.SNIPE_LEADERBOARD_LIMIT,
                time_period=time_period,
                category=category,
            ),
            source="data-api",
        )
        if not leaderboard.ok:
            logger.error("Failed to fetch leaderboard", error=leaderboard.error)
            return []

        positions: list[TopPosition] = []
        for trader in leaderboard.value:
            positions.extend(await self._positions_for_trader(trader))
            await asyncio.sleep(settings.SNIPE_TRADER_GAP_SECONDS)

        positions.sort(key=lambda p: p.total_size, reverse=True)
        return positions[: settings.SNIPE_TOP_POSITIONS]

    async def _positions_for_trader(self, trader: LeaderboardEntry) -> list[TopPosition]:
        activity = await ProviderResult.capture(
            self.polymarket.get_trader_activity(trader.address, limit=settings.SNIPE_ACTIVITY_LIMIT),
            source="data-api",
        )
        if not activity.ok:
            logger.warning("Failed to fetch trader activity", trader=trader.name, error=activity.error)
            return []

        return group_trader_fills(trader, activity.value)

    async def _lookup_market(self, condition_id: str) -> Optional[GammaMarket]:
        result = await ProviderResult.capture(
            self.polymarket.get_market_by_condition_id(condition_id), source="gamma"
        )
        if not result.ok:
            logger.warning("Market lookup failed", condition_id=condition_id, error=result.error)
            return None
        return result.value

    # ==================== COPY ====================

    async def snipe_top_positions(self) -> dict:
        risk = await self.ledger.get_risk_config()
        if risk is None:
            logger.error("Risk configuration not found, skipping snipe")
            return {"copied": 0, "skipped": 0, "positions": []}
        snipe_size = float(risk.snipe_size)
        profit_target = float(risk.snipe_profit_target)
        paper_mode = await self.ledger.is_paper_trading_mode()

        copied, skipped = 0, 0
        copied_positions: list[dict] = []
        for top in await self.get_top_positions():
            if await self._is_held(top.condition_id, top.outcome):
                skipped += 1
                continue

            record = await self._copy_position(top, snipe_size, profit_target, paper_mode)
            if record is None:
                skipped += 1
                continue
            copied += 1
            copied_positions.append(record)
            await asyncio.sleep(settings.SNIPE_ORDER_GAP_SECONDS)

        logger.info("Snipe pass complete", copied=copied, skipped=skipped)
        return {"copied": copied, "skipped": skipped, "positions": copied_positions}

    async def _is_held(self, condition_id: str, outcome: str) -> bool:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(SnipedPosition.id)
                    .where(
                        SnipedPosition.condition_id == condition_id,
                        SnipedPosition.outcome == outcome,
                        SnipedPosition.status == SnipeStatus.OPEN.value,
                    )
                    .limit(1)
                )
            ).first()
        return row is not None

    async def _copy_position(
        self, top: TopPosition, snipe_size: float, profit_target: float, paper_mode: bool
    ) -> Optional[dict]:
        token_id: Optional[str] = None
        entry_price = top.avg_price
        market = await self._lookup_market(top.condition_id)
        if market is not None:
            token_id = market.token_for_outcome(top.outcome)
            quoted = market.price_for_outcome(top.outcome)
            if is_valid_price(quoted):
                entry_price = quoted

        if not is_valid_price(entry_price):
            logger.warning("No usable entry price, skipping", condition_id=top.condition_id)
            return None

        order_id: Optional[str] = None
        if not paper_mode:
            if token_id:
                result = await self.execution.place_market_order(
                    token_id, OrderSide.BUY, snipe_size, paper=False
                )
                if result.ok:
                    order_id = result.value.order_id
                else:
                    logger.error("Live snipe order failed, tracking as paper", error=result.error)
            else:
                logger.warning("No token id, cannot place live order", title=top.title)
        is_paper = order_id is None

        async with self._session_factory() as session:
            position = SnipedPosition(
                condition_id=top.condition_id,
                token_id=token_id,
                title=top.title,
                slug=top.slug,
                outcome=top.outcome,
                entry_price=entry_price,
                current_price=entry_price,
                size=snipe_size,
                status=SnipeStatus.OPEN.value,
                source_trader=top.source_trader,
                source_trader_name=top.source_trader_name,
                profit_target=profit_target,
                order_id=order_id,
                is_paper_trade=is_paper,
            )
            session.add(position)
            await session.commit()
            await session.refresh(position)

        await self.ledger.update_budget(snipe_size, 0.0)

        payload = {
            "id": position.id,
            "title": top.title,
            "outcome": top.outcome,
            "entry_price": entry_price,
            "size": snipe_size,
            "source_trader": top.source_trader_name,
            "order_id": order_id,
            "is_paper_trade": is_paper,
        }
        logger.info(
            "[PAPER] Copied position" if is_paper else "[LIVE] Copied position",
            title=(top.title or "")[:60],
            outcome=top.outcome,
            entry_price=entry_price,
        )
        self.event_bus.publish("snipe:copied", payload)
        return payload

    # ==================== MARK & CLOSE ====================

    async def check_and_close_positions(self) -> dict:
        checked, closed = 0, 0
        for position in await self.list_positions(status=SnipeStatus.OPEN):
            checked += 1
            try:
                if await self._mark_and_maybe_close(position):
                    closed += 1
            except Exception as e:
                logger.error("Error checking sniped position", position_id=position.id, error=str(e))
            await asyncio.sleep(settings.RESOLVER_ITEM_GAP_SECONDS)
        return {"checked": checked, "closed": closed}

    async def _current_price(self, position: SnipedPosition) -> Optional[float]:
        market = await self._lookup_market(position.condition_id)
        if market is not None:
            quoted = market.price_for_outcome(position.outcome)
            if is_valid_price(quoted):
                if not position.token_id:
                    position.token_id = market.token_for_outcome(position.outcome)
                return quoted

        if position.is_paper_trade and settings.PAPER_DRIFT_ENABLED:
            return drift_price(float(position.entry_price), self._rand)
        return None

    async def _mark_and_maybe_close(self, position: SnipedPosition) -> bool:
        current_price = await self._current_price(position)
        if current_price is None:
            logger.debug("Position unpriced this pass", position_id=position.id)
            return False

        async with self._session_factory() as session:
            await session.execute(
                update(SnipedPosition)
                .where(SnipedPosition.id == position.id)
                .values(current_price=current_price, token_id=position.token_id)
            )
            await session.commit()

        entry_price = float(position.entry_price)
        pnl_pct = (current_price - entry_price) / entry_price
        if pnl_pct + _TARGET_EPSILON < float(position.profit_target):
            return False

        shares = float(position.size) / entry_price
        realized_pnl = shares * current_price - float(position.size)

        sell_order_id: Optional[str] = None
        if not position.is_paper_trade:
            if not position.token_id:
                logger.error("Cannot sell live position without token id", position_id=position.id)
                return False
            result = await self.execution.place_market_order(
                position.token_id, OrderSide.SELL, shares, paper=False, quoted_price=current_price
            )
            if not result.ok:
                logger.error(
                    "Live sell failed, position left open",
                    position_id=position.id,
                    error=result.error,
                )
                return False
            sell_order_id = result.value.order_id

        async with self._session_factory() as session:
            result = await session.execute(
                update(SnipedPosition)
                .where(
                    SnipedPosition.id == position.id,
                    SnipedPosition.status == SnipeStatus.OPEN.value,
                )
                .values(
                    status=SnipeStatus.CLOSED.value,
                    current_price=current_price,
                    realized_pnl=realized_pnl,
                    closed_at=utcnow(),
                )
            )
            await session.commit()
        if not result.rowcount:
            return False

        await self.ledger.update_budget(0.0, realized_pnl)
        logger.info(
            "Sniped position closed",
            position_id=position.id,
            title=(position.title or "")[:60],
            pnl_pct=round(pnl_pct * 100, 2),
            realized_pnl=round(realized_pnl, 4),
        )
        self.event_bus.publish(
            "snipe:closed",
            {
                "id": position.id,
                "title": position.title,
                "outcome": position.outcome,
                "entry_price": entry_price,
                "exit_price": current_price,
                "pnl_pct": pnl_pct * 100,
                "realized_pnl": realized_pnl,
                "sell_order_id": sell_order_id,
                "is_paper_trade": bool(position.is_paper_trade),
            },
        )
        return True

    # ==================== LIFECYCLE ====================

    async def run_once(self) -> dict:
        risk = await self.ledger.get_risk_config()
        sniped = None
        if risk is not None and risk.snipe_enabled:
            sniped = await self.snipe_top_positions()
        checked = await self.check_and_close_positions()
        self._last_run_at = utcnow()
        return {"snipe": sniped, "check": checked}

    async def start(self, interval_seconds: Optional[float] = None) -> bool:
        if self.is_running:
            logger.info("Snipe service already running")
            return False
        interval = settings.SNIPE_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self._task = asyncio.create_task(self._loop(float(interval)), name="snipe")
        logger.info("Snipe service started", interval_seconds=interval)
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
        logger.info("Snipe service stopped")

    async def _loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Snipe loop error", error=str(e))
                self.event_bus.publish("error", {"source": "snipe", "error": str(e)})
            await asyncio.sleep(interval_seconds)

    # ==================== READS ====================

    async def list_positions(
        self, status: Optional[SnipeStatus] = None, limit: Optional[int] = None
    ) -> list[SnipedPosition]:
        query = select(SnipedPosition).order_by(
            SnipedPosition.created_at.desc(), SnipedPosition.id.desc()
        )
        if status is not None:
            query = query.where(SnipedPosition.status == status.value)
        if limit:
            query = query.limit(limit)
        async with self._session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def get_status(self) -> dict:
        positions = await self.list_positions()
        open_positions = [p for p in positions if p.status == SnipeStatus.OPEN.value]
        closed_positions = [p for p in positions if p.status == SnipeStatus.CLOSED.value]
        return {
            "is_running": self.is_running,
            "open_positions": len(open_positions),
            "closed_positions": len(closed_positions),
            "realized_pnl": sum(float(p.realized_pnl or 0.0) for p in closed_positions),
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
        }
