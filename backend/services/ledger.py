"""
Budget Ledger - daily spend/P&L counters and singleton config access

All strategies debit and credit the same per-day ``budget_tracking`` row.
Increments are single UPSERT statements so concurrent loops never lose
an update.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_upsert

from models.database import (
    AppConfig,
    AsyncSessionLocal,
    BudgetTracking,
    LastAnalysis,
    RiskConfig,
    SINGLETON_ID,
    SpreadConfig,
)
from utils.logger import get_logger
from utils.utcnow import utc_date_key, utcnow

logger = get_logger("ledger")

DEFAULT_ANALYSIS_INTERVAL_MINUTES = 5

RISK_CONFIG_FIELDS = (
    "max_bet_size",
    "daily_budget",
    "max_open_positions",
    "min_confidence_threshold",
    "max_market_exposure",
    "snipe_enabled",
    "snipe_size",
    "snipe_profit_target",
)
APP_CONFIG_FIELDS = ("paper_trading_mode", "trading_enabled", "analysis_interval_minutes")
SPREAD_CONFIG_FIELDS = (
    "spread_enabled",
    "scan_interval_seconds",
    "min_spread_threshold",
    "max_spread_bet_size",
    "auto_execute",
    "scan_multi_outcome",
)


class BudgetLedger:
    def __init__(self, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory

    # ==================== CONFIG ====================

    async def get_risk_config(self) -> Optional[RiskConfig]:
        async with self._session_factory() as session:
            return await session.get(RiskConfig, SINGLETON_ID)

    async def get_app_config(self) -> Optional[AppConfig]:
        async with self._session_factory() as session:
            return await session.get(AppConfig, SINGLETON_ID)

    async def get_spread_config(self) -> Optional[SpreadConfig]:
        async with self._session_factory() as session:
            return await session.get(SpreadConfig, SINGLETON_ID)

    async def update_risk_config(self, updates: dict) -> RiskConfig:
        return await self._update_singleton(RiskConfig, RISK_CONFIG_FIELDS, updates)

    async def update_app_config(self, updates: dict) -> AppConfig:
        return await self._update_singleton(AppConfig, APP_CONFIG_FIELDS, updates)

    async def update_spread_config(self, updates: dict) -> SpreadConfig:
        return await self._update_singleton(SpreadConfig, SPREAD_CONFIG_FIELDS, updates)

    async def _update_singleton(self, model, allowed: tuple, updates: dict):
        async with self._session_factory() as session:
            row = await session.get(model, SINGLETON_ID)
            if row is None:
                row = model(id=SINGLETON_ID)
                session.add(row)
            changed = {}
            for key, value in updates.items():
                if key in allowed and value is not None:
                    setattr(row, key, value)
                    changed[key] = value
            await session.commit()
            await session.refresh(row)
        logger.info("Config updated", table=model.__tablename__, changes=changed)
        return row

    async def is_trading_enabled(self) -> bool:
        config = await self.get_app_config()
        return bool(config and config.trading_enabled)

    async def is_paper_trading_mode(self) -> bool:
        """Paper unless the config row explicitly says otherwise."""
        try:
            config = await self.get_app_config()
        except Exception as e:
            logger.error("Failed to read app config, assuming paper mode", error=str(e))
            return True
        if config is None:
            return True
        return bool(config.paper_trading_mode)

    # ==================== BUDGET ====================

    async def get_today(self) -> BudgetTracking:
        """Today's budget row, created on first access."""
        today = utc_date_key()
        async with self._session_factory() as session:
            await session.execute(
                sqlite_upsert(BudgetTracking)
                .values(date=today, spent=0.0, profit_loss=0.0, trades_count=0)
                .on_conflict_do_nothing(index_elements=["date"])
            )
            await session.commit()
            result = await session.execute(
                select(BudgetTracking).where(BudgetTracking.date == today)
            )
            return result.scalar_one()

    async def get_spent_today(self) -> float:
        today = await self.get_today()
        return float(today.spent or 0.0)

    async def update_budget(self, size: float, pnl: float = 0.0) -> None:
        """
        Atomically add ``size`` to today's spend and ``pnl`` to its P&L.

        Executions call this with (size, 0) and resolutions with (0, pnl);
        each call counts as one ledger movement in ``trades_count``.
        """
        stmt = sqlite_upsert(BudgetTracking).values(
            date=utc_date_key(),
            spent=float(size),
            profit_loss=float(pnl),
            trades_count=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["date"],
            set_={
                "spent": BudgetTracking.spent + stmt.excluded.spent,
                "profit_loss": BudgetTracking.profit_loss + stmt.excluded.profit_loss,
                "trades_count": BudgetTracking.trades_count + 1,
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug("Budget updated", size=size, pnl=pnl)

    async def release_spend(self, size: float) -> None:
        """Return spend reserved for an order the exchange never filled."""
        stmt = sqlite_upsert(BudgetTracking).values(
            date=utc_date_key(), spent=0.0, profit_loss=0.0, trades_count=0
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["date"],
            set_={"spent": BudgetTracking.spent - float(size)},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.info("Released unfilled spend", size=size)

    async def get_budget_status(self) -> dict:
        risk = await self.get_risk_config()
        today = await self.get_today()
        daily_budget = float(risk.daily_budget) if risk else 0.0
        spent = float(today.spent or 0.0)
        remaining = max(0.0, daily_budget - spent)
        return {
            "date": today.date,
            "daily_budget": daily_budget,
            "spent": spent,
            "remaining": remaining,
            "profit_loss": float(today.profit_loss or 0.0),
            "trades_count": int(today.trades_count or 0),
            "utilization_pct": (spent / daily_budget * 100.0) if daily_budget > 0 else 0.0,
        }

    # ==================== ANALYSIS COOLDOWN ====================

    async def should_analyze_market(self, market_id: str) -> bool:
        app_config = await self.get_app_config()
        interval = (
            app_config.analysis_interval_minutes
            if app_config and app_config.analysis_interval_minutes
            else DEFAULT_ANALYSIS_INTERVAL_MINUTES
        )
        async with self._session_factory() as session:
            last = await session.get(LastAnalysis, market_id)
        if last is None or last.last_analyzed_at is None:
            return True
        return utcnow() - last.last_analyzed_at >= timedelta(minutes=interval)

    async def record_analysis(self, market_id: str) -> None:
        now = utcnow()
        stmt = sqlite_upsert(LastAnalysis).values(market_id=market_id, last_analyzed_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["market_id"],
            set_={"last_analyzed_at": now},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
