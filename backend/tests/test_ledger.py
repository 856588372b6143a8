import asyncio
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import AppConfig, BudgetTracking, LastAnalysis, SINGLETON_ID
from utils.utcnow import utc_date_key, utcnow


@pytest.mark.asyncio
async def test_seeded_defaults(ledger):
    risk = await ledger.get_risk_config()
    app = await ledger.get_app_config()
    spread = await ledger.get_spread_config()

    assert risk.max_bet_size == 10.0
    assert risk.daily_budget == 100.0
    assert risk.min_confidence_threshold == 0.6
    assert app.paper_trading_mode is True
    assert app.trading_enabled is False
    assert spread.min_spread_threshold == 0.01
    assert spread.auto_execute is False


@pytest.mark.asyncio
async def test_update_config_ignores_unknown_and_none(ledger):
    row = await ledger.update_risk_config(
        {"max_bet_size": 25.0, "daily_budget": None, "not_a_field": 1}
    )

    assert row.max_bet_size == 25.0
    assert row.daily_budget == 100.0
    assert not hasattr(row, "not_a_field")


@pytest.mark.asyncio
async def test_paper_mode_defaults_to_true_without_row(ledger, session_factory):
    async with session_factory() as session:
        await session.delete(await session.get(AppConfig, SINGLETON_ID))
        await session.commit()

    assert await ledger.is_paper_trading_mode() is True
    assert await ledger.is_trading_enabled() is False


@pytest.mark.asyncio
async def test_today_row_created_once(ledger, session_factory):
    first = await ledger.get_today()
    second = await ledger.get_today()

    assert first.id == second.id
    assert first.date == utc_date_key()
    async with session_factory() as session:
        rows = (await session.execute(select(BudgetTracking))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_update_budget_accumulates(ledger):
    await ledger.update_budget(10.0)
    await ledger.update_budget(5.0)
    await ledger.update_budget(0.0, pnl=3.5)
    await ledger.update_budget(0.0, pnl=-1.0)

    today = await ledger.get_today()
    assert today.spent == pytest.approx(15.0)
    assert today.profit_loss == pytest.approx(2.5)
    assert today.trades_count == 4


@pytest.mark.asyncio
async def test_concurrent_updates_are_not_lost(ledger):
    await asyncio.gather(*(ledger.update_budget(1.0) for _ in range(10)))

    assert await ledger.get_spent_today() == pytest.approx(10.0)


@pytest.mark.asyncio
async def test_release_spend(ledger):
    await ledger.update_budget(10.0)
    await ledger.release_spend(4.0)

    today = await ledger.get_today()
    assert today.spent == pytest.approx(6.0)
    assert today.trades_count == 1


@pytest.mark.asyncio
async def test_budget_status(ledger):
    await ledger.update_budget(25.0, pnl=2.0)

    status = await ledger.get_budget_status()

    assert status["daily_budget"] == 100.0
    assert status["spent"] == pytest.approx(25.0)
    assert status["remaining"] == pytest.approx(75.0)
    assert status["profit_loss"] == pytest.approx(2.0)
    assert status["trades_count"] == 1
    assert status["utilization_pct"] == pytest.approx(25.0)


@pytest.mark.asyncio
async def test_analysis_cooldown(ledger, session_factory):
    assert await ledger.should_analyze_market("m1") is True

    await ledger.record_analysis("m1")
    assert await ledger.should_analyze_market("m1") is False
    assert await ledger.should_analyze_market("m2") is True

    async with session_factory() as session:
        row = await session.get(LastAnalysis, "m1")
        row.last_analyzed_at = utcnow() - timedelta(minutes=6)
        await session.commit()
    assert await ledger.should_analyze_market("m1") is True


@pytest.mark.asyncio
async def test_record_analysis_upserts(ledger, session_factory):
    await ledger.record_analysis("m1")
    await ledger.record_analysis("m1")

    async with session_factory() as session:
        rows = (await session.execute(select(LastAnalysis))).scalars().all()
    assert [r.market_id for r in rows] == ["m1"]
