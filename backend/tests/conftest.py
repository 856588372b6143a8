"""Shared fixtures for the trading service tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
import pytest_asyncio
from datetime import timedelta
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from config import settings
from models.database import Base, seed_default_config
from models.market import (
    AccountPosition,
    GammaEvent,
    GammaMarket,
    LeaderboardEntry,
    OrderBookQuote,
    TraderActivity,
)
from services.event_bus import ALL_EVENTS, EventBus
from services.execution import ExecutionClient
from services.ledger import BudgetLedger
from utils.utcnow import utcnow


# ---------------------------------------------------------------------------
# Timing: every pacing delay collapses to zero under test
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def no_delays(monkeypatch):
    for name in (
        "SPREAD_ORDER_GAP_SECONDS",
        "RESOLVER_ITEM_GAP_SECONDS",
        "SNIPE_TRADER_GAP_SECONDS",
        "SNIPE_ORDER_GAP_SECONDS",
        "TRADING_INTER_MARKET_DELAY_SECONDS",
    ):
        monkeypatch.setattr(settings, name, 0)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'trading.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await seed_default_config(session)
    yield factory
    await engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return BudgetLedger(session_factory)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class RecordingBus(EventBus):
    """EventBus that also keeps every published event in order."""

    def __init__(self):
        super().__init__()
        self.events: list[tuple[str, dict]] = []
        self.subscribe(ALL_EVENTS, lambda event_type, data: self.events.append((event_type, data)))

    def of_type(self, event_type: str) -> list[dict]:
        return [data for name, data in self.events if name == event_type]


@pytest.fixture
def event_bus():
    return RecordingBus()


@pytest.fixture
def paper_execution():
    """Execution client with no credentials: paper orders only."""
    return ExecutionClient()


class FakePolymarket:
    """In-memory stand-in for PolymarketClient."""

    def __init__(self):
        self.markets: dict[str, GammaMarket] = {}
        self.events: list[GammaEvent] = []
        self.books: dict[str, OrderBookQuote] = {}
        self.history: dict[str, list] = {}
        self.leaderboard: list[LeaderboardEntry] = []
        self.activity: dict[str, list[TraderActivity]] = {}
        self.positions: dict[str, list[AccountPosition]] = {}
        self.failing: set[str] = set()

    def _maybe_fail(self, key: str):
        if key in self.failing:
            raise RuntimeError(f"{key} unavailable")

    def add_market(self, market: GammaMarket) -> GammaMarket:
        self.markets[market.id] = market
        return market

    async def get_market(self, market_id):
        self._maybe_fail(f"market:{market_id}")
        if market_id not in self.markets:
            raise RuntimeError(f"market {market_id} not found")
        return self.markets[market_id]

    async def get_markets(self, active=True, closed=False, limit=100, offset=0):
        self._maybe_fail("markets")
        return [m for m in self.markets.values() if m.active and not m.closed][:limit]

    async def get_events(self, active=True, closed=False, limit=100, offset=0):
        self._maybe_fail("events")
        return [e for e in self.events if e.active and not e.closed][:limit]

    async def get_event(self, event_id):
        self._maybe_fail(f"event:{event_id}")
        for event in self.events:
            if event.id == event_id:
                return event
        raise RuntimeError(f"event {event_id} not found")

    async def get_market_by_condition_id(self, condition_id):
        self._maybe_fail(f"condition:{condition_id}")
        for market in self.markets.values():
            if market.condition_id == condition_id:
                return market
        return None

    async def get_order_book(self, token_id):
        self._maybe_fail(f"book:{token_id}")
        if token_id not in self.books:
            raise RuntimeError(f"no book for {token_id}")
        return self.books[token_id]

    async def get_price_history(self, token_id, interval="1d", fidelity=15):
        self._maybe_fail(f"history:{token_id}")
        return self.history.get(token_id, [])

    async def get_leaderboard(self, limit=5, time_period="DAY", order_by="PNL", category="OVERALL"):
        self._maybe_fail("leaderboard")
        return self.leaderboard[:limit]

    async def get_trader_activity(self, address, limit=50):
        self._maybe_fail(f"activity:{address}")
        return self.activity.get(address, [])[:limit]

    async def get_positions(self, address, size_threshold=0.0):
        self._maybe_fail(f"positions:{address}")
        return self.positions.get(address, [])

    async def close(self):
        pass


@pytest.fixture
def polymarket():
    return FakePolymarket()


def make_market(
    market_id="m1",
    yes=0.47,
    no=0.50,
    condition_id=None,
    question="Will it happen?",
    tokens=None,
    closed=False,
    end_in_hours=48.0,
    group_item_title="",
    liquidity=1000.0,
    volume=500.0,
):
    end_date = utcnow() + timedelta(hours=end_in_hours) if end_in_hours is not None else None
    return GammaMarket(
        id=market_id,
        condition_id=condition_id or f"0x{market_id}",
        question=question,
        slug=f"slug-{market_id}",
        group_item_title=group_item_title,
        outcomes=["Yes", "No"],
        clob_token_ids=tokens if tokens is not None else [f"{market_id}-yes", f"{market_id}-no"],
        outcome_prices=[yes, no],
        closed=closed,
        volume_24h=volume,
        liquidity=liquidity,
        end_date=end_date,
    )
