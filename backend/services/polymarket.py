from typing import Optional

from config import settings
from models import (
    AccountPosition,
    GammaEvent,
    GammaMarket,
    LeaderboardEntry,
    OrderBookQuote,
    PricePoint,
    TraderActivity,
)
from utils.logger import get_logger
from utils.retry import RetryableClient, RetryConfig

logger = get_logger("polymarket")


class PolymarketClient:
    """Read-only client for the Polymarket Gamma, CLOB and Data APIs.

    Methods raise on transport or HTTP errors; loops wrap calls in
    ``ProviderResult.capture`` so a failing endpoint degrades instead of
    aborting a tick.
    """

    def __init__(self, http: Optional[RetryableClient] = None):
        self.gamma_url = settings.GAMMA_API_URL
        self.clob_url = settings.CLOB_API_URL
        self.data_url = settings.DATA_API_URL
        self._http = http or RetryableClient(
            config=RetryConfig.from_settings(),
            timeout=float(settings.API_TIMEOUT_SECONDS),
        )

    async def close(self):
        await self._http.aclose()

    async def _get_json(self, url: str, params: Optional[dict] = None):
        response = await self._http.get(url, params=params)
        return response.json()

    # ==================== GAMMA API ====================

    async def get_market(self, market_id: str) -> GammaMarket:
        """Fetch a single market by its Gamma id"""
        data = await self._get_json(f"{self.gamma_url}/markets/{market_id}")
        return GammaMarket.from_gamma_response(data)

    async def get_markets(
        self,
        active: bool = True,
        closed: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[GammaMarket]:
        """Fetch markets from Gamma API"""
        params = {
            "active": str(active).lower(),
            "closed": str(closed).lower(),
            "limit": limit,
            "offset": offset,
        }
        data = await self._get_json(f"{self.gamma_url}/markets", params=params)
        return [GammaMarket.from_gamma_response(m) for m in data or []]

    async def get_events(
        self,
        active: bool = True,
        closed: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[GammaEvent]:
        """Fetch events from Gamma API (events contain grouped markets)"""
        params = {
            "active": str(active).lower(),
            "closed": str(closed).lower(),
            "limit": limit,
            "offset": offset,
        }
        data = await self._get_json(f"{self.gamma_url}/events", params=params)
        return [GammaEvent.from_gamma_response(e) for e in data or []]

    async def get_event(self, event_id: str) -> GammaEvent:
        data = await self._get_json(f"{self.gamma_url}/events/{event_id}")
        return GammaEvent.from_gamma_response(data)

    async def get_market_by_condition_id(self, condition_id: str) -> Optional[GammaMarket]:
        """Look up a market by condition_id"""
        data = await self._get_json(
            f"{self.gamma_url}/markets",
            params={"condition_id": condition_id, "limit": 1},
        )
        requested = str(condition_id or "").strip().lower()
        for row in data or []:
            # Gamma ignores unknown filters and may return unrelated rows
            market = GammaMarket.from_gamma_response(row)
            if market.condition_id.lower() == requested:
                return market
        return None

    # ==================== CLOB API ====================

    async def get_order_book(self, token_id: str) -> OrderBookQuote:
        """Top of book for a token"""
        data = await self._get_json(f"{self.clob_url}/book", params={"token_id": token_id})
        return OrderBookQuote.from_book(token_id, data or {})

    async def get_price_history(
        self,
        token_id: str,
        interval: str = "1d",
        fidelity: int = 15,
    ) -> list[PricePoint]:
        """Price series for a token (``{t, p}`` points)"""
        data = await self._get_json(
            f"{self.clob_url}/prices-history",
            params={"market": token_id, "interval": interval, "fidelity": fidelity},
        )
        points = []
        for raw in (data or {}).get("history") or []:
            point = PricePoint.from_history(raw)
            if point is not None:
                points.append(point)
        return points

    # ==================== DATA API ====================

    async def get_leaderboard(
        self,
        limit: int = 5,
        time_period: str = "DAY",
        order_by: str = "PNL",
        category: str = "OVERALL",
    ) -> list[LeaderboardEntry]:
        """
        Fetch top traders from the Polymarket leaderboard.

        Args:
            limit: Max results (the API caps a page at 50)
            time_period: DAY, WEEK, MONTH, or ALL
            order_by: PNL (profit/loss) or VOL (volume)
            category: OVERALL, POLITICS, SPORTS, CRYPTO, ...
        """
        params = {
            "limit": min(limit, 50),
            "timePeriod": time_period.upper(),
            "orderBy": order_by.upper(),
        }
        # Only include category if not OVERALL
        if category.upper() != "OVERALL":
            params["category"] = category.upper()

        data = await self._get_json(f"{self.data_url}/v1/leaderboard", params=params)
        entries = [LeaderboardEntry.from_response(row) for row in data or []]
        return [entry for entry in entries if entry.address]

    async def get_trader_activity(self, address: str, limit: int = 50) -> list[TraderActivity]:
        """Most recent BUY fills for a wallet, newest first"""
        params = {
            "user": address,
            "type": "TRADE",
            "side": "BUY",
            "limit": limit,
            "sortBy": "TIMESTAMP",
            "sortDirection": "DESC",
        }
        data = await self._get_json(f"{self.data_url}/activity", params=params)
        activity = [TraderActivity.from_response(row) for row in data or []]
        return [row for row in activity if row.condition_id]

    async def get_positions(self, address: str, size_threshold: float = 0.0) -> list[AccountPosition]:
        """Current holdings of a wallet, largest first"""
        params = {
            "user": address,
            "sizeThreshold": size_threshold,
            "sortBy": "CURRENT",
            "sortDirection": "DESC",
        }
        data = await self._get_json(f"{self.data_url}/positions", params=params)
        positions = [AccountPosition.from_response(row) for row in data or []]
        return [p for p in positions if p.condition_id]
