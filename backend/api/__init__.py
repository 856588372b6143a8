from api.routes_account import router as account_router
from api.routes_config import router as config_router
from api.routes_leaderboard import router as leaderboard_router
from api.routes_markets import router as markets_router
from api.routes_snipe import router as snipe_router
from api.routes_spread import router as spread_router
from api.routes_trades import router as trades_router
from api.routes_trading import router as trading_router
from api.websocket import handle_websocket, manager

__all__ = [
    "account_router",
    "config_router",
    "leaderboard_router",
    "markets_router",
    "snipe_router",
    "spread_router",
    "trades_router",
    "trading_router",
    "handle_websocket",
    "manager",
]
