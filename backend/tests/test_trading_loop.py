import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import AnalysisLog, Trade, TradeOutcome, TradeStatus
from models.market import OrderBookQuote, PricePoint
from models.results import ProviderResult
from services.ai.advisor import AdvisoryClient
from services.execution import OrderStatus
from services.risk_gate import RiskGate
from services.trading_loop import (
    MarketAlreadyMonitored,
    MarketNotMonitored,
    TradingLoop,
    resolution_pnl,
    winning_outcome,
)
from utils.utcnow import utcnow

from tests.conftest import make_market


class _ScriptedProvider:
    name = "scripted"

    def __init__(self):
        self.reply = '{"decision": "HOLD", "confidence": 0.5, "reasoning": "no edge"}'
        self.error = None
        self.prompts = []

    async def complete(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def provider():
    return _ScriptedProvider()


@pytest_asyncio.fixture
async def loop(polymarket, paper_execution, ledger, event_bus, session_factory, provider):
    trading_loop = TradingLoop(
        polymarket,
        paper_execution,
        ledger,
        RiskGate(ledger, session_factory),
        AdvisoryClient([provider]),
        event_bus,
        session_factory,
    )
    yield trading_loop
    await trading_loop.shutdown()


async def _monitor(loop, polymarket, market_id="m1", **kwargs):
    polymarket.add_market(make_market(market_id, **kwargs))
    market, _ = await loop.add_market(market_id)
    return market


async def _add_trade(session_factory, market_id="m1", outcome="YES", size=10.0, price=0.40,
                     status=TradeStatus.EXECUTED, order_id=None, is_paper=True):
    async with session_factory() as session:
        trade = Trade(
            market_id=market_id,
            order_id=order_id,
            side="BUY",
            outcome=outcome,
            size=size,
            price=price,
            status=status.value,
            is_paper_trade=is_paper,
        )
        session.add(trade)
        await session.commit()
        await session.refresh(trade)
        return trade


# ==================== PURE HELPERS ====================


def test_resolution_pnl():
    assert resolution_pnl(10.0, 0.5, won=True) == pytest.approx(10.0)
    assert resolution_pnl(10.0, 0.5, won=False) == -10.0
    assert resolution_pnl(10.0, 0.0, won=True) == 0.0


def test_winning_outcome_needs_a_clear_side():
    assert winning_outcome(make_market(yes=0.97, no=0.03)) == "YES"
    assert winning_outcome(make_market(yes=0.02, no=0.98)) == "NO"
    assert winning_outcome(make_market(yes=0.60, no=0.40)) is None


# ==================== MARKETS ====================


@pytest.mark.asyncio
async def test_add_market_fetches_tokens_and_details(loop, polymarket):
    market = await _monitor(loop, polymarket, question="Will it rain?")

    assert market.clob_token_ids == ["m1-yes", "m1-no"]
    assert market.condition_id == "0xm1"
    assert market.question == "Will it rain?"
    assert market.end_date is not None
    assert market.is_active is True


@pytest.mark.asyncio
async def test_add_market_duplicate_and_reactivation(loop, polymarket):
    await _monitor(loop, polymarket)

    with pytest.raises(MarketAlreadyMonitored):
        await loop.add_market("m1")

    await loop.set_market_active("m1", False)
    market, reactivated = await loop.add_market("m1")
    assert reactivated is True
    assert market.is_active is True

    with pytest.raises(MarketNotMonitored):
        await loop.set_market_active("nope", False)


@pytest.mark.asyncio
async def test_add_market_without_gamma_details(loop):
    market, reactivated = await loop.add_market("offline", question="Offline market")

    assert reactivated is False
    # NULL token ids read back as an empty list
    assert market.clob_token_ids == []
    assert market.question == "Offline market"


@pytest.mark.asyncio
async def test_price_history_is_deduplicated(loop, polymarket):
    market = await _monitor(loop, polymarket)
    start = datetime(2026, 1, 1)
    polymarket.history["m1-yes"] = [
        PricePoint(timestamp=start, price=0.40),
        PricePoint(timestamp=start + timedelta(hours=1), price=0.45),
    ]

    assert await loop.update_price_history(market) == 2
    assert await loop.update_price_history(market) == 2

    rows = await loop.get_price_history("m1")
    assert [r.yes_price for r in rows] == [0.40, 0.45]
    assert rows[1].no_price == pytest.approx(0.55)


# ==================== SNAPSHOT ====================


@pytest.mark.asyncio
async def test_snapshot_prefers_order_book_mid(loop, polymarket):
    market = await _monitor(loop, polymarket)
    polymarket.books["m1-yes"] = OrderBookQuote(token_id="m1-yes", best_bid=0.44, best_ask=0.46)

    snapshot = await loop.build_snapshot(market)

    assert snapshot.yes_price == pytest.approx(0.45)
    assert snapshot.no_price == pytest.approx(0.55)
    assert snapshot.hours_remaining == pytest.approx(48.0, abs=0.1)
    assert snapshot.position is None


@pytest.mark.asyncio
async def test_snapshot_ignores_one_sided_or_empty_book(loop, polymarket):
    market = await _monitor(loop, polymarket)

    polymarket.books["m1-yes"] = OrderBookQuote.from_book("m1-yes", {"bids": [{"price": "0.46"}]})
    snapshot = await loop.build_snapshot(market)
    assert snapshot.yes_price == pytest.approx(0.47)

    polymarket.books["m1-yes"] = OrderBookQuote.from_book("m1-yes", {"bids": [], "asks": []})
    snapshot = await loop.build_snapshot(market)
    assert snapshot.yes_price == pytest.approx(0.47)


@pytest.mark.asyncio
async def test_snapshot_falls_back_to_gamma_price_then_gives_up(loop, polymarket):
    market = await _monitor(loop, polymarket)

    snapshot = await loop.build_snapshot(market)
    assert snapshot.yes_price == pytest.approx(0.47)
    assert snapshot.no_price == pytest.approx(0.53)

    polymarket.failing.add("market:m1")
    assert await loop.build_snapshot(market) is None


@pytest.mark.asyncio
async def test_snapshot_includes_open_position(loop, polymarket, session_factory):
    market = await _monitor(loop, polymarket)
    await _add_trade(session_factory, outcome="YES", size=10.0, price=0.40)

    snapshot = await loop.build_snapshot(market)

    assert snapshot.position.shares == pytest.approx(25.0)
    assert snapshot.position.current_value == pytest.approx(25.0 * 0.47)
    assert snapshot.position.unrealized_pnl == pytest.approx(25.0 * 0.47 - 10.0)


# ==================== ANALYZE & TRADE ====================


@pytest.mark.asyncio
async def test_buy_decision_executes_paper_trade(loop, polymarket, provider, ledger, event_bus, session_factory):
    market = await _monitor(loop, polymarket)
    provider.reply = '{"decision": "BUY_YES", "confidence": 0.8, "reasoning": "cheap", "suggested_size": 5}'

    result = await loop.analyze_and_trade(market)

    assert result["analyzed"] is True
    assert result["risk"]["approved"] is True
    trade = result["trade"]
    assert trade["status"] == TradeStatus.EXECUTED.value
    assert trade["outcome"] == "YES"
    assert trade["size"] == 5.0
    assert trade["price"] == pytest.approx(0.47)
    assert trade["is_paper_trade"] is True
    assert trade["order_id"].startswith("PAPER_")
    assert await ledger.get_spent_today() == pytest.approx(5.0)

    assert len(event_bus.of_type("analysis:complete")) == 1
    assert event_bus.of_type("trade:executed")[0]["trade_id"] == trade["id"]

    async with session_factory() as session:
        log = (await session.execute(select(AnalysisLog))).scalar_one()
    assert log.decision == "BUY_YES"
    assert log.provider == "scripted"
    assert log.trade_id == trade["id"]

    again = await loop.analyze_and_trade(market)
    assert again == {"market_id": "m1", "analyzed": False, "reason": "cooldown"}


@pytest.mark.asyncio
async def test_buy_size_clamped_by_risk_gate(loop, polymarket, provider):
    market = await _monitor(loop, polymarket)
    provider.reply = '{"decision": "BUY_NO", "confidence": 0.9, "suggested_size": 50}'

    result = await loop.analyze_and_trade(market)

    assert result["trade"]["size"] == 10.0
    assert result["trade"]["outcome"] == "NO"
    assert result["trade"]["price"] == pytest.approx(0.53)
    assert result["risk"]["reasons"] == ["Bet size adjusted from $50 to maximum $10"]


@pytest.mark.asyncio
async def test_low_confidence_buy_is_rejected(loop, polymarket, provider, ledger):
    market = await _monitor(loop, polymarket)
    provider.reply = '{"decision": "BUY_YES", "confidence": 0.5, "suggested_size": 5}'

    result = await loop.analyze_and_trade(market)

    assert result["risk"]["approved"] is False
    assert "trade" not in result
    assert await loop.list_trades() == []
    assert await ledger.get_spent_today() == 0.0


@pytest.mark.asyncio
async def test_hold_records_analysis_only(loop, polymarket, ledger):
    market = await _monitor(loop, polymarket)

    result = await loop.analyze_and_trade(market)

    assert result["analyzed"] is True
    assert result["decision"]["decision"] == "HOLD"
    assert await loop.list_trades() == []
    assert len(await loop.list_analyses()) == 1
    assert await ledger.should_analyze_market("m1") is False


@pytest.mark.asyncio
async def test_advisory_failure_publishes_error_and_skips_cooldown(loop, polymarket, provider, ledger, event_bus):
    market = await _monitor(loop, polymarket)
    provider.error = RuntimeError("HTTP 503")

    result = await loop.analyze_and_trade(market)

    assert result == {"market_id": "m1", "analyzed": False, "reason": "advisory failed"}
    assert event_bus.of_type("error")[0]["source"] == "advisory"
    assert await ledger.should_analyze_market("m1") is True
    analyses = await loop.list_analyses()
    assert analyses[0].decision == "HOLD"
    assert analyses[0].confidence == 0.0


@pytest.mark.asyncio
async def test_sell_decision_closes_open_position(loop, polymarket, provider, ledger, event_bus, session_factory):
    market = await _monitor(loop, polymarket)
    trade = await _add_trade(session_factory, outcome="YES", size=10.0, price=0.40)
    provider.reply = '{"decision": "SELL", "confidence": 0.9, "reasoning": "take profit"}'

    result = await loop.analyze_and_trade(market)

    assert "You hold: YES shares" in provider.prompts[0]
    assert result["sell"]["sold"] is True
    assert result["sell"]["realized_pnl"] == pytest.approx(25.0 * 0.47 - 10.0)
    sold = (await loop.list_trades(status=TradeStatus.RESOLVED))[0]
    assert sold.id == trade.id
    assert sold.resolved_outcome == "SOLD_YES"
    assert (await ledger.get_today()).profit_loss == pytest.approx(1.75)
    assert event_bus.of_type("trade:sold")[0]["exit_price"] == pytest.approx(0.47)


@pytest.mark.asyncio
async def test_analysis_without_trading_does_not_trade(loop, polymarket, provider):
    market = await _monitor(loop, polymarket)
    provider.reply = '{"decision": "BUY_YES", "confidence": 0.9, "suggested_size": 5}'

    result = await loop.analyze_market("m1")

    assert result["analyzed"] is True
    assert "trade" not in result
    assert await loop.list_trades() == []

    with pytest.raises(MarketNotMonitored):
        await loop.analyze_market("unknown")


@pytest.mark.asyncio
async def test_live_buy_failure_records_failed_trade(loop, polymarket, provider, ledger, event_bus):
    await ledger.update_app_config({"paper_trading_mode": False})
    market = await _monitor(loop, polymarket)
    provider.reply = '{"decision": "BUY_YES", "confidence": 0.8, "suggested_size": 5}'

    result = await loop.analyze_and_trade(market)

    assert result["trade"]["status"] == TradeStatus.FAILED.value
    assert result["trade"]["error_message"]
    assert await ledger.get_spent_today() == 0.0
    assert event_bus.of_type("error")[0]["source"] == "execution"


@pytest.mark.asyncio
async def test_manual_trade(loop, polymarket, ledger):
    await _monitor(loop, polymarket)

    result = await loop.execute_manual_trade("m1", TradeOutcome.NO, 4.0)

    assert result["executed"] is True
    assert result["trade"]["outcome"] == "NO"
    assert result["trade"]["claude_reasoning"] == "Manual trade"
    assert await ledger.get_spent_today() == pytest.approx(4.0)

    with pytest.raises(MarketNotMonitored):
        await loop.execute_manual_trade("unknown", TradeOutcome.YES, 4.0)


# ==================== RESOLUTION ====================


@pytest.mark.asyncio
async def test_expired_trades_resolve_against_closed_market(loop, polymarket, ledger, event_bus, session_factory):
    polymarket.add_market(make_market("old", yes=0.97, no=0.03, closed=True, end_in_hours=-2))
    await loop.add_market("old")
    winner = await _add_trade(session_factory, "old", outcome="YES", size=10.0, price=0.5)
    loser = await _add_trade(session_factory, "old", outcome="NO", size=4.0, price=0.5)

    result = await loop.resolve_expired_trades()

    assert result == {"checked": 2, "closed": 2, "skipped": 0}
    resolved = {t.id: t for t in await loop.list_trades(status=TradeStatus.RESOLVED)}
    assert resolved[winner.id].pnl == pytest.approx(10.0)
    assert resolved[winner.id].resolved_outcome == "YES"
    assert resolved[loser.id].pnl == pytest.approx(-4.0)
    assert (await ledger.get_today()).profit_loss == pytest.approx(6.0)
    assert len(event_bus.of_type("trade:resolved")) == 2
    assert (await loop.get_monitored_market("old")).is_active is False
    assert loop.resolver.is_running is False


@pytest.mark.asyncio
async def test_unsettled_trades_wait_for_scheduler(loop, polymarket, session_factory):
    await _monitor(loop, polymarket)
    polymarket.add_market(make_market("limbo", yes=0.60, no=0.40, closed=True, end_in_hours=-1))
    await loop.add_market("limbo")
    await _add_trade(session_factory, "m1")
    await _add_trade(session_factory, "limbo")

    result = await loop.resolve_expired_trades()

    assert result == {"checked": 1, "closed": 0, "skipped": 1}
    assert loop.resolver.is_running is True
    assert await loop.resolve_trade((await loop.list_trades(market_id="m1"))[0], "NO") is True
    # Already resolved: the conditional update matches nothing
    assert await loop.resolve_trade((await loop.list_trades(market_id="m1"))[0], "NO") is False


@pytest.mark.asyncio
async def test_reconcile_pending_trades(loop, ledger, session_factory, paper_execution, monkeypatch):
    filled = await _add_trade(session_factory, status=TradeStatus.PENDING, order_id="0xfilled", is_paper=False)
    cancelled = await _add_trade(
        session_factory, size=6.0, status=TradeStatus.PENDING, order_id="0xcancelled", is_paper=False
    )
    resting = await _add_trade(session_factory, status=TradeStatus.PENDING, order_id="0xresting", is_paper=False)
    await ledger.update_budget(26.0)
    statuses = {
        "0xfilled": OrderStatus.FILLED,
        "0xcancelled": OrderStatus.CANCELLED,
        "0xresting": OrderStatus.LIVE,
    }

    async def fake_status(order_id):
        return ProviderResult.success(statuses[order_id], source="clob")

    monkeypatch.setattr(paper_execution, "get_order_status", fake_status)

    assert await loop.reconcile_pending_trades() == 2

    by_id = {t.id: t for t in await loop.list_trades()}
    assert by_id[filled.id].status == TradeStatus.EXECUTED.value
    assert by_id[filled.id].executed_at is not None
    assert by_id[cancelled.id].status == TradeStatus.CANCELLED.value
    assert by_id[resting.id].status == TradeStatus.PENDING.value
    assert await ledger.get_spent_today() == pytest.approx(20.0)


# ==================== CYCLE ====================


@pytest.mark.asyncio
async def test_cycle_with_trading_disabled_only_resolves(loop, polymarket, provider):
    await _monitor(loop, polymarket)

    summary = await loop.run_cycle()

    assert summary["trading_enabled"] is False
    assert summary["analyzed"] == 0
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_cycle_analyzes_active_markets(loop, polymarket, provider, ledger):
    await ledger.update_app_config({"trading_enabled": True})
    await _monitor(loop, polymarket, "m1")
    await _monitor(loop, polymarket, "m2")
    await loop.set_market_active("m2", False)
    polymarket.history["m1-yes"] = [PricePoint(timestamp=utcnow(), price=0.47)]

    summary = await loop.run_cycle()

    assert summary["trading_enabled"] is True
    assert summary["analyzed"] == 1
    assert summary["errors"] == 0
    assert len(provider.prompts) == 1
    assert len(await loop.get_price_history("m1")) == 1

    status = await loop.get_status()
    assert status["last_cycle"] == summary
    assert status["advisory_providers"] == ["scripted"]


@pytest.mark.asyncio
async def test_start_is_idempotent(loop):
    assert await loop.start() is True
    assert await loop.start() is False
    assert (await loop.get_status())["interval_minutes"] == 5
    await loop.stop()
    assert loop.is_running is False
