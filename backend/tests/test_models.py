"""Tests for the exchange payload models: GammaMarket, GammaEvent, order books, Data API rows."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import math
from datetime import datetime

import pytest

from models.market import (
    GammaEvent,
    GammaMarket,
    LeaderboardEntry,
    OrderBookQuote,
    PricePoint,
    TraderActivity,
    is_valid_price,
)


@pytest.fixture
def raw_market_response():
    return {
        "id": 123456,
        "conditionId": "0xabc123",
        "question": "Will BTC exceed $100k by end of 2025?",
        "slug": "will-btc-exceed-100k-2025",
        "groupItemTitle": "$100k",
        "outcomes": '["Yes", "No"]',
        "clobTokenIds": '["token_yes_1", "token_no_1"]',
        "outcomePrices": '["0.65", "0.35"]',
        "active": True,
        "closed": False,
        "volume24hr": "12345.67",
        "liquidityNum": 5000,
        "endDate": "2025-12-31T23:59:59Z",
    }


# ============================================================================
# GammaMarket.from_gamma_response
# ============================================================================


class TestGammaMarket:
    def test_valid_data(self, raw_market_response):
        """Parsing a well-formed Gamma response yields correct fields."""
        market = GammaMarket.from_gamma_response(raw_market_response)

        assert market.id == "123456"
        assert market.condition_id == "0xabc123"
        assert market.slug == "will-btc-exceed-100k-2025"
        assert market.clob_token_ids == ["token_yes_1", "token_no_1"]
        assert market.outcome_prices == [0.65, 0.35]
        assert market.volume_24h == 12345.67
        assert market.liquidity == 5000.0
        assert market.end_date == datetime(2025, 12, 31, 23, 59, 59)
        assert market.label == "$100k"

    def test_outcome_helpers(self, raw_market_response):
        market = GammaMarket.from_gamma_response(raw_market_response)

        assert market.yes_token_id == "token_yes_1"
        assert market.no_token_id == "token_no_1"
        assert market.token_for_outcome("yes") == "token_yes_1"
        assert market.token_for_outcome("No") == "token_no_1"
        assert market.price_for_outcome("YES") == 0.65
        assert market.price_for_outcome("No") == 0.35

    def test_missing_fields_use_defaults(self):
        market = GammaMarket.from_gamma_response({"id": "1"})

        assert market.outcomes == ["Yes", "No"]
        assert market.clob_token_ids == []
        assert market.outcome_prices == []
        assert math.isnan(market.yes_price)
        assert market.yes_token_id is None
        assert market.end_date is None
        assert market.label == ""

    def test_native_lists_and_snake_case_keys(self):
        market = GammaMarket.from_gamma_response(
            {
                "id": "2",
                "condition_id": "0xdef",
                "clob_token_ids": ["a", " ", "b"],
                "outcome_prices": [0.4, "0.55"],
            }
        )

        assert market.condition_id == "0xdef"
        assert market.clob_token_ids == ["a", "b"]
        assert market.outcome_prices == [0.4, 0.55]

    def test_unparseable_prices_become_nan(self):
        market = GammaMarket.from_gamma_response({"id": "3", "outcomePrices": '["abc", "0.5"]'})

        assert math.isnan(market.outcome_prices[0])
        assert market.no_price == 0.5

    def test_malformed_json_list_is_empty(self):
        market = GammaMarket.from_gamma_response({"id": "4", "clobTokenIds": "[not json"})

        assert market.clob_token_ids == []


class TestGammaEvent:
    def test_nested_markets_parsed(self, raw_market_response):
        event = GammaEvent.from_gamma_response(
            {
                "id": 99,
                "slug": "btc-price",
                "title": "BTC price end of year",
                "markets": [raw_market_response, "garbage", {"id": "2"}],
                "closed": True,
                "endDate": "2025-12-31",
            }
        )

        assert event.id == "99"
        assert len(event.markets) == 2
        assert event.closed is True
        assert event.end_date == datetime(2025, 12, 31)


def test_is_valid_price():
    assert is_valid_price(0.5) is True
    assert is_valid_price(1) is True
    assert is_valid_price(0.0) is False
    assert is_valid_price(-0.1) is False
    assert is_valid_price(math.nan) is False
    assert is_valid_price(None) is False


def test_order_book_defaults_for_empty_sides():
    book = OrderBookQuote.from_book("t1", {})

    assert book.best_bid == 0.0
    assert book.best_ask == 1.0
    assert book.mid == 0.5
    assert book.is_two_sided is False


def test_order_book_one_sided_and_two_sided():
    bid_only = OrderBookQuote.from_book("t1", {"bids": [{"price": "0.46", "size": "10"}]})
    full = OrderBookQuote.from_book(
        "t1",
        {
            "bids": [{"price": "0.44"}, {"price": "0.46"}],
            "asks": [{"price": "0.50"}, {"price": "0.48"}],
        },
    )

    assert bid_only.is_two_sided is False
    assert full.is_two_sided is True
    assert full.mid == pytest.approx(0.47)


def test_price_point_accepts_epoch_seconds_and_millis():
    seconds = PricePoint.from_history({"t": 1767225600, "p": "0.42"})
    millis = PricePoint.from_history({"t": 1767225600000, "p": 0.42})

    assert seconds.timestamp == datetime(2026, 1, 1)
    assert millis.timestamp == seconds.timestamp
    assert PricePoint.from_history({"t": 1767225600, "p": 0}) is None


def test_leaderboard_entry_name_fallback():
    entry = LeaderboardEntry.from_response({"proxyWallet": "0x1234567890abcdef", "pnl": "55.5"})

    assert entry.address == "0x1234567890abcdef"
    assert entry.name == "0x12345678"
    assert entry.pnl == 55.5


def test_trader_activity_parsing():
    fill = TraderActivity.from_response(
        {
            "conditionId": "0xc1",
            "outcome": "Yes",
            "outcomeIndex": 0,
            "asset": "111",
            "price": "0.4",
            "usdcSize": 100,
            "title": "Some market",
            "timestamp": 1767225600,
        }
    )

    assert fill.outcome_index == 0
    assert fill.usdc_size == 100.0
    assert fill.timestamp == datetime(2026, 1, 1)
