from .market import (
    AccountPosition,
    GammaEvent,
    GammaMarket,
    LeaderboardEntry,
    OrderBookQuote,
    PricePoint,
    TraderActivity,
)
from .results import ProviderResult

__all__ = [
    "AccountPosition",
    "GammaEvent",
    "GammaMarket",
    "LeaderboardEntry",
    "OrderBookQuote",
    "PricePoint",
    "TraderActivity",
    "ProviderResult",
]
