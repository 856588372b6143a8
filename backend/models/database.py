from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
import enum
import logging
import os

from config import settings
from models.types import JSONList, PreciseFloat as Float
from utils.utcnow import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()

SINGLETON_ID = 1


class TradeSide(str, enum.Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeOutcome(str, enum.Enum):
    YES = "YES"
    NO = "NO"


class TradeStatus(str, enum.Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RESOLVED = "RESOLVED"


class SnipeStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    EXPIRED = "EXPIRED"


class SpreadType(str, enum.Enum):
    SINGLE = "SINGLE"  # One binary market: YES + NO
    MULTI = "MULTI"  # One event: leading outcome of every constituent market


class SpreadTradeStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


# ==================== MONITORED MARKETS ====================


class MonitoredMarket(Base):
    """Market the AI trading loop analyzes on every cycle"""

    __tablename__ = "monitored_markets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_id = Column(String, nullable=False, unique=True)
    condition_id = Column(String, nullable=True)
    clob_token_ids = Column(JSONList, nullable=True)  # [yes_token, no_token]
    question = Column(Text, nullable=False)
    slug = Column(String, nullable=True)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_monitored_active", "is_active"),)

    @property
    def yes_token_id(self):
        tokens = self.clob_token_ids or []
        return tokens[0] if tokens else None

    @property
    def no_token_id(self):
        tokens = self.clob_token_ids or []
        return tokens[1] if len(tokens) > 1 else None


class PriceHistory(Base):
    """Cached YES/NO price points per monitored market"""

    __tablename__ = "price_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_id = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    yes_price = Column(Float, nullable=False)
    no_price = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("market_id", "timestamp", name="uq_price_history_point"),
        Index("idx_price_history_market", "market_id"),
    )


# ==================== AI TRADES ====================


class Trade(Base):
    """Trade placed (or simulated) by the AI trading loop"""

    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_id = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    side = Column(String, nullable=False)  # TradeSide
    outcome = Column(String, nullable=False)  # TradeOutcome
    size = Column(Float, nullable=False)  # Currency units risked
    price = Column(Float, nullable=False)  # Fill price per share
    status = Column(String, nullable=False, default=TradeStatus.PENDING.value)
    claude_reasoning = Column(Text, nullable=True)
    is_paper_trade = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    executed_at = Column(DateTime, nullable=True)

    # Resolution
    resolved_outcome = Column(String, nullable=True)  # YES, NO, SOLD_YES, SOLD_NO
    resolved_at = Column(DateTime, nullable=True)
    pnl = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_trade_market", "market_id"),
        Index("idx_trade_status", "status"),
    )


class AnalysisLog(Base):
    """One row per advisory consultation (append-only)"""

    __tablename__ = "analysis_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_id = Column(String, nullable=False)
    market_data = Column(Text, nullable=True)  # Serialized snapshot
    prompt = Column(Text, nullable=True)
    response = Column(Text, nullable=True)  # Serialized decision
    decision = Column(String, nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    provider = Column(String, nullable=True)
    trade_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_analysis_market", "market_id"),)


class LastAnalysis(Base):
    """Per-market cooldown timestamp for advisory calls"""

    __tablename__ = "last_analysis"

    market_id = Column(String, primary_key=True)
    last_analyzed_at = Column(DateTime, nullable=False, default=utcnow)


# ==================== COPY TRADING (SNIPE) ====================


class SnipedPosition(Base):
    """Position copied from a top-ranked trader"""

    __tablename__ = "sniped_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    condition_id = Column(String, nullable=False)
    token_id = Column(String, nullable=True)
    title = Column(Text, nullable=True)
    slug = Column(String, nullable=True)
    outcome = Column(String, nullable=False)
    entry_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=True)
    size = Column(Float, nullable=False)
    status = Column(String, nullable=False, default=SnipeStatus.OPEN.value)
    source_trader = Column(String, nullable=True)
    source_trader_name = Column(String, nullable=True)
    profit_target = Column(Float, nullable=False, default=0.05)
    realized_pnl = Column(Float, nullable=True)
    order_id = Column(String, nullable=True)
    is_paper_trade = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    closed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_snipe_status", "status"),
        Index("idx_snipe_condition", "condition_id", "outcome"),
    )


# ==================== CONFIGURATION / LEDGER ====================


class RiskConfig(Base):
    """Singleton risk limits shared by every strategy"""

    __tablename__ = "risk_config"

    id = Column(Integer, primary_key=True, default=SINGLETON_ID)
    max_bet_size = Column(Float, nullable=False, default=10.0)
    daily_budget = Column(Float, nullable=False, default=100.0)
    max_open_positions = Column(Integer, nullable=False, default=10)
    min_confidence_threshold = Column(Float, nullable=False, default=0.6)
    max_market_exposure = Column(Float, nullable=False, default=50.0)
    snipe_enabled = Column(Boolean, nullable=False, default=False)
    snipe_size = Column(Float, nullable=False, default=10.0)
    snipe_profit_target = Column(Float, nullable=False, default=0.05)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BudgetTracking(Base):
    """Per-calendar-day (UTC) spend and P&L aggregate"""

    __tablename__ = "budget_tracking"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(String, nullable=False, unique=True)  # YYYY-MM-DD
    spent = Column(Float, nullable=False, default=0.0)
    profit_loss = Column(Float, nullable=False, default=0.0)
    trades_count = Column(Integer, nullable=False, default=0)


class AppConfig(Base):
    """Singleton global switches for the AI trading loop"""

    __tablename__ = "app_config"

    id = Column(Integer, primary_key=True, default=SINGLETON_ID)
    paper_trading_mode = Column(Boolean, nullable=False, default=True)
    trading_enabled = Column(Boolean, nullable=False, default=False)
    analysis_interval_minutes = Column(Integer, nullable=False, default=5)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SpreadConfig(Base):
    """Singleton settings for the arbitrage scanner"""

    __tablename__ = "spread_config"

    id = Column(Integer, primary_key=True, default=SINGLETON_ID)
    spread_enabled = Column(Boolean, nullable=False, default=False)
    scan_interval_seconds = Column(Integer, nullable=False, default=60)
    min_spread_threshold = Column(Float, nullable=False, default=0.01)
    max_spread_bet_size = Column(Float, nullable=False, default=10.0)
    auto_execute = Column(Boolean, nullable=False, default=False)
    scan_multi_outcome = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ==================== ARBITRAGE (SPREAD) ====================


class SpreadOpportunity(Base):
    """Outcome set whose combined price is below the guaranteed payout"""

    __tablename__ = "spread_opportunities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    opportunity_type = Column(String, nullable=False)  # SpreadType
    market_id = Column(String, nullable=True)  # SINGLE
    event_id = Column(String, nullable=True)  # MULTI
    condition_id = Column(String, nullable=True)
    question = Column(Text, nullable=True)
    slug = Column(String, nullable=True)
    outcomes = Column(JSONList, nullable=False, default=list)
    prices = Column(JSONList, nullable=False, default=list)
    token_ids = Column(JSONList, nullable=False, default=list)
    total_cost = Column(Float, nullable=False)
    guaranteed_payout = Column(Float, nullable=False, default=1.0)
    spread_profit = Column(Float, nullable=False)
    spread_pct = Column(Float, nullable=False)
    liquidity = Column(Float, nullable=True)
    volume_24h = Column(Float, nullable=True)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    discovered_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_spread_opp_active", "is_active"),
        Index("idx_spread_opp_key", "opportunity_type", "market_id", "event_id"),
    )

    @property
    def num_outcomes(self) -> int:
        return len(self.prices or [])


class SpreadTrade(Base):
    """Executed hedge across every outcome of an opportunity"""

    __tablename__ = "spread_trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    opportunity_id = Column(Integer, nullable=True)
    opportunity_type = Column(String, nullable=False)
    market_id = Column(String, nullable=True)
    event_id = Column(String, nullable=True)
    condition_id = Column(String, nullable=True)
    question = Column(Text, nullable=True)
    slug = Column(String, nullable=True)
    outcomes = Column(JSONList, nullable=False, default=list)
    end_date = Column(DateTime, nullable=True)
    total_cost = Column(Float, nullable=False)
    guaranteed_payout = Column(Float, nullable=False, default=1.0)
    expected_profit = Column(Float, nullable=False)
    size_per_outcome = Column(Float, nullable=False)
    num_outcomes = Column(Integer, nullable=False)
    total_invested = Column(Float, nullable=False)
    order_ids = Column(JSONList, nullable=False, default=list)
    status = Column(String, nullable=False, default=SpreadTradeStatus.OPEN.value)
    realized_pnl = Column(Float, nullable=True)
    is_paper_trade = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    closed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_spread_trade_status", "status"),)


def model_to_dict(row) -> dict:
    """Column values of an ORM row, with datetimes rendered as ISO strings."""
    data = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, datetime):
            value = value.isoformat()
        data[column.key] = value
    return data


# ==================== DATABASE SETUP ====================

_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent loops (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades across processes for SQLite databases."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    with lock_path.open("a", encoding="utf-8") as lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


async def seed_default_config(session: AsyncSession) -> None:
    """Insert the singleton config rows with their defaults when absent."""
    for model in (RiskConfig, AppConfig, SpreadConfig):
        existing = await session.get(model, SINGLETON_ID)
        if existing is None:
            session.add(model(id=SINGLETON_ID))
            logger.info("Seeded default %s row", model.__tablename__)
    await session.commit()


async def init_database():
    """Initialize database, apply Alembic migrations and seed config rows."""
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)

    async with AsyncSessionLocal() as session:
        await seed_default_config(session)


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session

