import math
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import delete, select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import SpreadConfig, SpreadOpportunity, SpreadTrade, SpreadTradeStatus, SpreadType
from models.market import GammaEvent
from services.spread import (
    OpportunityNotFound,
    SpreadConfigMissing,
    SpreadService,
    detect_multi_outcome_event,
    detect_single_market,
    expected_profit_for,
)
from utils.utcnow import utcnow

from tests.conftest import make_market


def _event(event_id="e1", prices=(0.30, 0.30, 0.35), closed=False):
    markets = [
        make_market(
            market_id=f"{event_id}-{i}",
            yes=price,
            no=1 - price,
            group_item_title=f"Candidate {i}",
            liquidity=100.0 * (i + 1),
        )
        for i, price in enumerate(prices)
    ]
    return GammaEvent(id=event_id, slug=f"event-{event_id}", title="Who will win?", markets=markets, closed=closed)


@pytest.fixture
def service(polymarket, paper_execution, ledger, event_bus, session_factory):
    return SpreadService(polymarket, paper_execution, ledger, event_bus, session_factory)


async def _drop_spread_config(session_factory):
    async with session_factory() as session:
        await session.execute(delete(SpreadConfig))
        await session.commit()


async def _add_open_trade(session_factory, market_id="m1", end_date=None, expected_profit=0.3):
    async with session_factory() as session:
        trade = SpreadTrade(
            opportunity_type=SpreadType.SINGLE.value,
            market_id=market_id,
            question="Will it happen?",
            outcomes=["Yes", "No"],
            end_date=end_date,
            total_cost=0.97,
            expected_profit=expected_profit,
            size_per_outcome=5.0,
            num_outcomes=2,
            total_invested=10.0,
            order_ids=["PAPER_SPREAD_1_0", "PAPER_SPREAD_1_1"],
            status=SpreadTradeStatus.OPEN.value,
            is_paper_trade=True,
        )
        session.add(trade)
        await session.commit()
        await session.refresh(trade)
        return trade


# ==================== DETECTORS ====================


def test_single_market_spread_math():
    candidate = detect_single_market(make_market(yes=0.47, no=0.50))

    assert candidate is not None
    assert candidate.opportunity_type == SpreadType.SINGLE
    assert candidate.total_cost == pytest.approx(0.97)
    assert candidate.spread_profit == pytest.approx(0.03)
    assert candidate.spread_pct == pytest.approx(0.03 / 0.97)
    assert candidate.token_ids == ["m1-yes", "m1-no"]
    assert candidate.key == "m1"


def test_expected_profit_is_payout_gap_times_investment():
    assert expected_profit_for(0.03 / 0.97, 10.0) == pytest.approx(0.3)


def test_single_market_without_spread_or_with_bad_prices():
    assert detect_single_market(make_market(yes=0.50, no=0.50)) is None
    assert detect_single_market(make_market(yes=0.55, no=0.50)) is None
    assert detect_single_market(make_market(yes=math.nan, no=0.40)) is None
    assert detect_single_market(make_market(yes=0.0, no=0.40)) is None


def test_multi_outcome_event_spread():
    candidate = detect_multi_outcome_event(_event())

    assert candidate is not None
    assert candidate.opportunity_type == SpreadType.MULTI
    assert candidate.outcomes == ["Candidate 0", "Candidate 1", "Candidate 2"]
    assert candidate.total_cost == pytest.approx(0.95)
    assert candidate.token_ids == ["e1-0-yes", "e1-1-yes", "e1-2-yes"]
    assert candidate.liquidity == 100.0
    assert candidate.key == "e1"


def test_multi_outcome_event_skipped_when_any_leg_unpriced():
    assert detect_multi_outcome_event(_event(prices=(0.30, math.nan, 0.35))) is None
    assert detect_multi_outcome_event(_event(prices=(0.40, 0.35, 0.30))) is None
    assert detect_multi_outcome_event(_event(prices=(0.30,))) is None


def test_detectors_skip_quotes_without_an_id():
    assert detect_single_market(make_market(market_id="", yes=0.47, no=0.50)) is None
    assert detect_multi_outcome_event(_event(event_id="")) is None


# ==================== SCANNING ====================


@pytest.mark.asyncio
async def test_scan_all_filters_persists_and_publishes(service, polymarket, event_bus, session_factory):
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    polymarket.add_market(make_market("thin", yes=0.495, no=0.50))
    polymarket.events.append(_event())

    result = await service.scan_all()

    assert result == {"single": 1, "multi": 1, "total": 2}
    assert event_bus.of_type("scan_complete") == [result]
    opportunities = await service.list_opportunities()
    assert [o.opportunity_type for o in opportunities] == ["MULTI", "SINGLE"]
    assert opportunities[1].market_id == "wide"
    assert opportunities[0].event_id == "e1"


@pytest.mark.asyncio
async def test_rescan_refreshes_instead_of_duplicating(service, polymarket, session_factory):
    market = polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    await service.scan_all()

    polymarket.markets["wide"] = market.model_copy(update={"outcome_prices": [0.45, 0.50]})
    await service.scan_all()

    async with session_factory() as session:
        rows = (await session.execute(select(SpreadOpportunity))).scalars().all()
    assert len(rows) == 1
    assert rows[0].prices == [0.45, 0.50]
    assert rows[0].total_cost == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_stale_opportunities_are_deactivated(service, polymarket, session_factory):
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    await service.scan_all()

    async with session_factory() as session:
        row = (await session.execute(select(SpreadOpportunity))).scalar_one()
        row.last_seen_at = utcnow() - timedelta(minutes=10)
        await session.commit()
    del polymarket.markets["wide"]

    await service.scan_all()

    assert await service.list_opportunities() == []
    assert len(await service.list_opportunities(active_only=False)) == 1


@pytest.mark.asyncio
async def test_scan_survives_provider_failure(service, polymarket):
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    polymarket.failing.add("events")

    result = await service.scan_all()

    assert result["single"] == 1
    assert result["multi"] == 0


@pytest.mark.asyncio
async def test_keyless_quotes_are_not_merged(service, polymarket):
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    polymarket.add_market(make_market("", yes=0.40, no=0.50, condition_id="0xnoid"))

    result = await service.scan_all()

    assert result["single"] == 1
    assert [o.market_id for o in await service.list_opportunities()] == ["wide"]


@pytest.mark.asyncio
async def test_scan_aborts_without_spread_config(service, polymarket, event_bus, session_factory):
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    await _drop_spread_config(session_factory)

    result = await service.scan_all()

    assert result == {"single": 0, "multi": 0, "total": 0, "error": "Spread configuration not found"}
    assert await service.list_opportunities() == []
    assert event_bus.of_type("scan_complete") == []

    with pytest.raises(SpreadConfigMissing):
        await service.start()
    assert service.is_running is False


# ==================== EXECUTION ====================


@pytest.mark.asyncio
async def test_execute_paper_opportunity(service, polymarket, ledger, event_bus):
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    await service.scan_all()
    opp = (await service.list_opportunities())[0]

    try:
        payload = await service.execute_opportunity(opp.id, 10.0)

        assert payload["is_paper_trade"] is True
        assert payload["expected_profit"] == pytest.approx(0.3)
        assert len(payload["order_ids"]) == 2
        assert all(oid.startswith("PAPER_SPREAD_") for oid in payload["order_ids"])
        assert event_bus.of_type("trade_executed") == [payload]
        assert await ledger.get_spent_today() == pytest.approx(10.0)

        trades = await service.list_trades(status=SpreadTradeStatus.OPEN)
        assert len(trades) == 1
        assert trades[0].size_per_outcome == pytest.approx(5.0)
        assert trades[0].num_outcomes == 2
        assert service.resolver.is_running is True
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_live_leg_failure_records_paper_trade(service, polymarket, ledger):
    await ledger.update_app_config({"paper_trading_mode": False})
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    await service.scan_all()
    opp = (await service.list_opportunities())[0]

    try:
        # No CLOB credentials: every live order fails
        payload = await service.execute_opportunity(opp.id, 10.0)
    finally:
        await service.shutdown()

    assert payload["is_paper_trade"] is True
    assert all(oid.startswith("PAPER_SPREAD_") for oid in payload["order_ids"])


@pytest.mark.asyncio
async def test_execute_rejects_bad_requests(service, polymarket):
    with pytest.raises(OpportunityNotFound):
        await service.execute_opportunity(999, 10.0)

    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))
    await service.scan_all()
    opp = (await service.list_opportunities())[0]
    with pytest.raises(ValueError):
        await service.execute_opportunity(opp.id, 0)


@pytest.mark.asyncio
async def test_auto_execute_skips_markets_with_open_trades(service, polymarket, ledger):
    await ledger.update_spread_config({"auto_execute": True, "max_spread_bet_size": 4.0})
    polymarket.add_market(make_market("wide", yes=0.47, no=0.50))

    try:
        await service.scan_all()
        await service.scan_all()
    finally:
        await service.shutdown()

    trades = await service.list_trades()
    assert len(trades) == 1
    assert trades[0].total_invested == 4.0


# ==================== RESOLUTION ====================


@pytest.mark.asyncio
async def test_close_trade_is_idempotent(service, ledger, event_bus, session_factory):
    trade = await _add_open_trade(session_factory, expected_profit=0.3)

    assert await service.close_trade(trade) is True
    assert await service.close_trade(trade) is False

    closed = (await service.list_trades(status=SpreadTradeStatus.CLOSED))[0]
    assert closed.realized_pnl == pytest.approx(0.3)
    assert closed.closed_at is not None
    today = await ledger.get_today()
    assert today.profit_loss == pytest.approx(0.3)
    assert today.trades_count == 1
    assert len(event_bus.of_type("trade_closed")) == 1


@pytest.mark.asyncio
async def test_resolution_check_closes_settled_past_due_trades(service, polymarket, session_factory):
    polymarket.add_market(make_market("done", closed=True))
    polymarket.add_market(make_market("running", closed=False))
    polymarket.add_market(make_market("future", closed=True))
    past = utcnow() - timedelta(hours=1)
    await _add_open_trade(session_factory, "done", end_date=past)
    await _add_open_trade(session_factory, "running", end_date=past)
    await _add_open_trade(session_factory, "future", end_date=utcnow() + timedelta(hours=5))

    result = await service.check_open_trades()

    assert result == {"checked": 2, "closed": 1, "skipped": 1}
    open_ids = {t.market_id for t in await service.list_trades(status=SpreadTradeStatus.OPEN)}
    assert open_ids == {"running", "future"}

    forced = await service.check_open_trades(force_all=True)
    assert forced == {"checked": 2, "closed": 1, "skipped": 0}


@pytest.mark.asyncio
async def test_resolution_check_tolerates_lookup_errors(service, polymarket, session_factory):
    await _add_open_trade(session_factory, "gone", end_date=utcnow() - timedelta(hours=1))

    result = await service.check_open_trades()

    assert result == {"checked": 1, "closed": 0, "skipped": 0}


@pytest.mark.asyncio
async def test_stats_and_status(service, session_factory):
    trade = await _add_open_trade(session_factory, expected_profit=0.3)
    await _add_open_trade(session_factory, market_id="m2", expected_profit=0.2)
    await service.close_trade(trade)

    stats = await service.get_stats()
    status = await service.get_status()

    assert stats["total"] == 2
    assert stats["open"] == 1
    assert stats["closed"] == 1
    assert stats["total_invested"] == 20.0
    assert stats["realized_pnl"] == pytest.approx(0.3)
    assert stats["expected_profit_open"] == pytest.approx(0.2)
    assert status["is_running"] is False
    assert status["open_trades"] == 1


@pytest.mark.asyncio
async def test_start_is_idempotent(service):
    try:
        assert await service.start(interval_seconds=3600) is True
        assert await service.start(interval_seconds=3600) is False
        assert service.is_running is True
    finally:
        await service.shutdown()
    assert service.is_running is False
