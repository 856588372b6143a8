import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.polymarket import PolymarketClient  # noqa: E402
from utils.retry import RetryableClient, RetryConfig, is_retryable_error  # noqa: E402


class _FakeResponse:
    def __init__(self, payload):
        self.status_code = 200
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


class _FakeHttp:
    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    async def get(self, url, params=None):
        self.calls.append((url, params))
        for suffix, payload in self.routes.items():
            if url.endswith(suffix):
                return _FakeResponse(payload)
        raise AssertionError(f"unexpected url {url}")

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_get_markets_parses_gamma_rows():
    http = _FakeHttp(
        {
            "/markets": [
                {
                    "id": "12",
                    "question": "Will it happen?",
                    "conditionId": "0xabc",
                    "clobTokenIds": '["111", "222"]',
                    "outcomePrices": '["0.47", "0.50"]',
                    "volume24hr": "1500.5",
                    "liquidityNum": 800,
                    "endDate": "2026-03-01T12:00:00Z",
                }
            ]
        }
    )
    client = PolymarketClient(http=http)

    markets = await client.get_markets(limit=5)

    assert len(markets) == 1
    assert markets[0].clob_token_ids == ["111", "222"]
    assert markets[0].outcome_prices == [0.47, 0.50]
    assert markets[0].volume_24h == 1500.5
    assert http.calls[0][1] == {"active": "true", "closed": "false", "limit": 5, "offset": 0}


@pytest.mark.asyncio
async def test_get_market_by_condition_id_ignores_unrelated_rows():
    requested = "0x168b010a13936e827d9f1407afbfcfd915120f31246e95e9e20441e31011c3b0"
    http = _FakeHttp(
        {
            "/markets": [
                {
                    "id": "12",
                    "question": "Will Joe Biden get Coronavirus before the election?",
                    "conditionId": "0xe3b423dfad8c22ff75c9899c4e8176f628cf4ad4caa00481764d320e7415f7a9",
                }
            ]
        }
    )
    client = PolymarketClient(http=http)

    assert await client.get_market_by_condition_id(requested) is None


@pytest.mark.asyncio
async def test_get_market_by_condition_id_matches_case_insensitively():
    http = _FakeHttp({"/markets": [{"id": "7", "conditionId": "0xABC", "question": "Pacers vs. Nets"}]})
    client = PolymarketClient(http=http)

    market = await client.get_market_by_condition_id("0xabc")

    assert market is not None
    assert market.question == "Pacers vs. Nets"


@pytest.mark.asyncio
async def test_order_book_picks_best_levels_from_unsorted_sides():
    http = _FakeHttp(
        {
            "/book": {
                "bids": [{"price": "0.41", "size": "10"}, {"price": "0.44", "size": "5"}],
                "asks": [{"price": "0.49", "size": "3"}, {"price": "0.46", "size": "8"}],
            }
        }
    )
    client = PolymarketClient(http=http)

    book = await client.get_order_book("111")

    assert book.best_bid == 0.44
    assert book.best_ask == 0.46
    assert book.mid == pytest.approx(0.45)


@pytest.mark.asyncio
async def test_price_history_drops_unusable_points():
    http = _FakeHttp(
        {
            "/prices-history": {
                "history": [
                    {"t": 1767225600, "p": 0.42},
                    {"t": 1767229200, "p": "bad"},
                    {"p": 0.5},
                ]
            }
        }
    )
    client = PolymarketClient(http=http)

    points = await client.get_price_history("111")

    assert len(points) == 1
    assert points[0].price == 0.42


@pytest.mark.asyncio
async def test_leaderboard_params_and_filtering():
    http = _FakeHttp(
        {
            "/v1/leaderboard": [
                {"proxyWallet": "0xaaa", "userName": "alpha", "rank": "1", "pnl": 1200},
                {"userName": "ghost"},
            ]
        }
    )
    client = PolymarketClient(http=http)

    entries = await client.get_leaderboard(limit=80, time_period="week", category="politics")

    assert [e.address for e in entries] == ["0xaaa"]
    assert entries[0].name == "alpha"
    assert http.calls[0][1] == {
        "limit": 50,
        "timePeriod": "WEEK",
        "orderBy": "PNL",
        "category": "POLITICS",
    }


@pytest.mark.asyncio
async def test_trader_activity_requires_condition_id():
    http = _FakeHttp(
        {
            "/activity": [
                {"conditionId": "0xc1", "outcome": "Yes", "price": "0.4", "usdcSize": "100", "title": "A"},
                {"outcome": "No", "price": "0.6", "usdcSize": "50"},
            ]
        }
    )
    client = PolymarketClient(http=http)

    activity = await client.get_trader_activity("0xaaa", limit=20)

    assert len(activity) == 1
    assert activity[0].usdc_size == 100.0
    assert http.calls[0][1]["side"] == "BUY"


@pytest.mark.asyncio
async def test_positions_parse_data_api_rows():
    http = _FakeHttp(
        {
            "/positions": [
                {
                    "conditionId": "0xc1",
                    "asset": "111",
                    "outcome": "Yes",
                    "size": "20",
                    "avgPrice": "0.40",
                    "curPrice": "0.55",
                    "cashPnl": "3.0",
                    "redeemable": True,
                    "endDate": "2026-03-01",
                },
                {"asset": "222", "size": "5"},
            ]
        }
    )
    client = PolymarketClient(http=http)

    positions = await client.get_positions("0xme")

    assert len(positions) == 1
    position = positions[0]
    # Missing values are derived from size and prices
    assert position.initial_value == pytest.approx(8.0)
    assert position.current_value == pytest.approx(11.0)
    assert position.percent_pnl == pytest.approx(37.5)
    assert position.redeemable is True
    assert http.calls[0][1]["user"] == "0xme"


def test_retryable_errors():
    config = RetryConfig()
    request = httpx.Request("GET", "https://example.com")

    assert is_retryable_error(httpx.ConnectTimeout("slow"), config) is True
    assert is_retryable_error(
        httpx.HTTPStatusError("busy", request=request, response=httpx.Response(503, request=request)),
        config,
    ) is True
    assert is_retryable_error(
        httpx.HTTPStatusError("gone", request=request, response=httpx.Response(404, request=request)),
        config,
    ) is False
    assert is_retryable_error(ValueError("nope"), config) is False


@pytest.mark.asyncio
async def test_retryable_client_retries_then_succeeds():
    attempts = []

    def handler(request):
        attempts.append(request.url)
        if len(attempts) < 3:
            return httpx.Response(503, request=request)
        return httpx.Response(200, json={"ok": True}, request=request)

    client = RetryableClient(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        config=RetryConfig(max_attempts=4, base_delay=0.0, jitter=False),
    )

    response = await client.get("https://example.com/markets")

    assert response.json() == {"ok": True}
    assert len(attempts) == 3
    await client.aclose()
