"""Canonical shapes for exchange data.

Every Gamma/CLOB/Data-API payload is translated here, once, into the
types the rest of the backend consumes. Field-name drift in the upstream
APIs (camelCase vs snake_case, stringified JSON lists, numbers as
strings) is absorbed by the ``from_*`` constructors.
"""

from pydantic import BaseModel
from typing import Optional
from datetime import datetime
import json
import math

from utils.utcnow import to_utc_naive


def _parse_maybe_json_list(raw: object) -> list[object]:
    """Accept list values directly or parse JSON-encoded list strings."""
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, tuple):
        return list(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return []
        if isinstance(parsed, list):
            return parsed
    return []


def _to_float(value: object, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _first_present(data: dict, *keys: str) -> object:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def is_valid_price(price: float) -> bool:
    """A usable quote: a finite, strictly positive number."""
    return isinstance(price, (int, float)) and not math.isnan(price) and price > 0


class GammaMarket(BaseModel):
    """A single prediction market as reported by the Gamma API"""

    id: str
    condition_id: str = ""
    question: str = ""
    slug: str = ""
    group_item_title: str = ""
    outcomes: list[str] = []
    clob_token_ids: list[str] = []
    # Raw quoted prices; unparseable entries are kept as NaN so detectors can reject them
    outcome_prices: list[float] = []
    active: bool = True
    closed: bool = False
    volume_24h: float = 0.0
    liquidity: float = 0.0
    end_date: Optional[datetime] = None

    @classmethod
    def from_gamma_response(cls, data: dict) -> "GammaMarket":
        """Parse market from Gamma API response"""
        clob_token_ids = [
            str(token_id).strip()
            for token_id in _parse_maybe_json_list(
                _first_present(data, "clobTokenIds", "clob_token_ids")
            )
            if str(token_id or "").strip()
        ]
        outcome_prices = [
            _to_float(price, default=math.nan)
            for price in _parse_maybe_json_list(
                _first_present(data, "outcomePrices", "outcome_prices")
            )
        ]
        outcomes = [
            str(label) for label in _parse_maybe_json_list(data.get("outcomes"))
        ]

        return cls(
            id=str(data.get("id", "")),
            condition_id=str(_first_present(data, "conditionId", "condition_id") or ""),
            question=data.get("question") or "",
            slug=data.get("slug") or "",
            group_item_title=data.get("groupItemTitle") or "",
            outcomes=outcomes or ["Yes", "No"],
            clob_token_ids=clob_token_ids,
            outcome_prices=outcome_prices,
            active=bool(data.get("active", True)),
            closed=bool(data.get("closed", False)),
            volume_24h=_to_float(_first_present(data, "volume24hr", "volume24hrClob")),
            liquidity=_to_float(_first_present(data, "liquidityNum", "liquidity")),
            end_date=to_utc_naive(_first_present(data, "endDate", "end_date_iso", "endDateIso")),
        )

    @property
    def yes_price(self) -> float:
        """Get YES token price"""
        return self.outcome_prices[0] if self.outcome_prices else math.nan

    @property
    def no_price(self) -> float:
        """Get NO token price"""
        return self.outcome_prices[1] if len(self.outcome_prices) > 1 else math.nan

    @property
    def yes_token_id(self) -> Optional[str]:
        return self.clob_token_ids[0] if self.clob_token_ids else None

    @property
    def no_token_id(self) -> Optional[str]:
        return self.clob_token_ids[1] if len(self.clob_token_ids) > 1 else None

    @property
    def label(self) -> str:
        return self.group_item_title or self.question

    def token_for_outcome(self, outcome: str) -> Optional[str]:
        """YES maps to the first token, anything else to the second."""
        if str(outcome).strip().upper() == "YES":
            return self.yes_token_id
        return self.no_token_id

    def price_for_outcome(self, outcome: str) -> float:
        if str(outcome).strip().upper() == "YES":
            return self.yes_price
        return self.no_price


class GammaEvent(BaseModel):
    """An event grouping mutually-exclusive markets"""

    id: str
    slug: str = ""
    title: str = ""
    markets: list[GammaMarket] = []
    active: bool = True
    closed: bool = False
    end_date: Optional[datetime] = None
    liquidity: float = 0.0
    volume_24h: float = 0.0

    @classmethod
    def from_gamma_response(cls, data: dict) -> "GammaEvent":
        """Parse event from Gamma API response"""
        markets = []
        for raw_market in data.get("markets") or []:
            if isinstance(raw_market, dict):
                markets.append(GammaMarket.from_gamma_response(raw_market))

        return cls(
            id=str(data.get("id", "")),
            slug=data.get("slug") or "",
            title=data.get("title") or "",
            markets=markets,
            active=bool(data.get("active", True)),
            closed=bool(data.get("closed", False)),
            end_date=to_utc_naive(_first_present(data, "endDate", "end_date_iso")),
            liquidity=_to_float(_first_present(data, "liquidity", "liquidityNum")),
            volume_24h=_to_float(data.get("volume24hr")),
        )


class OrderBookQuote(BaseModel):
    """Top of book for one outcome token"""

    token_id: str
    best_bid: float
    best_ask: float
    bid_levels: int = 1
    ask_levels: int = 1

    @classmethod
    def from_book(cls, token_id: str, data: dict) -> "OrderBookQuote":
        bids = [_to_float(level.get("price")) for level in data.get("bids") or []]
        asks = [_to_float(level.get("price")) for level in data.get("asks") or []]
        # Book sides are not guaranteed to be sorted best-first
        best_bid = max(bids) if bids else 0.0
        best_ask = min(asks) if asks else 1.0
        return cls(
            token_id=token_id,
            best_bid=best_bid,
            best_ask=best_ask,
            bid_levels=len(bids),
            ask_levels=len(asks),
        )

    @property
    def is_two_sided(self) -> bool:
        """False when a side is empty and its 0/1 placeholder would skew the mid."""
        return self.bid_levels > 0 and self.ask_levels > 0

    @property
    def mid(self) -> float:
        return (self.best_bid + self.best_ask) / 2.0


class PricePoint(BaseModel):
    timestamp: datetime
    price: float

    @classmethod
    def from_history(cls, data: dict) -> Optional["PricePoint"]:
        moment = to_utc_naive(data.get("t"))
        price = _to_float(data.get("p"), default=math.nan)
        if moment is None or not is_valid_price(price):
            return None
        return cls(timestamp=moment, price=price)


class LeaderboardEntry(BaseModel):
    """A ranked trader from the Data API leaderboard"""

    address: str
    name: str = ""
    rank: int = 0
    pnl: float = 0.0
    volume: float = 0.0

    @classmethod
    def from_response(cls, data: dict) -> "LeaderboardEntry":
        address = str(_first_present(data, "proxyWallet", "address", "user") or "")
        return cls(
            address=address,
            name=str(_first_present(data, "userName", "name", "pseudonym") or address[:10]),
            rank=int(_to_float(data.get("rank"))),
            pnl=_to_float(_first_present(data, "pnl", "profit")),
            volume=_to_float(_first_present(data, "vol", "volume")),
        )


class TraderActivity(BaseModel):
    """One BUY fill from a trader's activity feed"""

    condition_id: str
    outcome: str
    outcome_index: Optional[int] = None
    asset: str = ""
    price: float = 0.0
    usdc_size: float = 0.0
    title: str = ""
    slug: str = ""
    timestamp: Optional[datetime] = None

    @classmethod
    def from_response(cls, data: dict) -> "TraderActivity":
        outcome_index = data.get("outcomeIndex")
        return cls(
            condition_id=str(data.get("conditionId") or ""),
            outcome=str(data.get("outcome") or ""),
            outcome_index=int(outcome_index) if outcome_index is not None else None,
            asset=str(data.get("asset") or ""),
            price=_to_float(data.get("price")),
            usdc_size=_to_float(_first_present(data, "usdcSize", "usdc_size")),
            title=data.get("title") or "",
            slug=data.get("slug") or "",
            timestamp=to_utc_naive(data.get("timestamp")),
        )


class AccountPosition(BaseModel):
    """A wallet's holding in one outcome, from the Data API ``/positions`` feed"""

    condition_id: str
    asset: str = ""
    outcome: str = ""
    title: str = ""
    slug: str = ""
    size: float = 0.0
    avg_price: float = 0.0
    cur_price: float = 0.0
    initial_value: float = 0.0
    current_value: float = 0.0
    cash_pnl: float = 0.0
    realized_pnl: float = 0.0
    redeemable: bool = False
    end_date: Optional[datetime] = None

    @classmethod
    def from_response(cls, data: dict) -> "AccountPosition":
        size = _to_float(data.get("size"))
        avg_price = _to_float(data.get("avgPrice"))
        cur_price = _to_float(data.get("curPrice"))
        return cls(
            condition_id=str(data.get("conditionId") or ""),
            asset=str(data.get("asset") or ""),
            outcome=str(data.get("outcome") or ""),
            title=data.get("title") or "",
            slug=data.get("slug") or "",
            size=size,
            avg_price=avg_price,
            cur_price=cur_price,
            # Older rows omit the derived values
            initial_value=_to_float(data.get("initialValue"), default=size * avg_price),
            current_value=_to_float(data.get("currentValue"), default=size * cur_price),
            cash_pnl=_to_float(data.get("cashPnl")),
            realized_pnl=_to_float(data.get("realizedPnl")),
            redeemable=bool(data.get("redeemable")),
            end_date=to_utc_naive(data.get("endDate")),
        )

    @property
    def percent_pnl(self) -> float:
        if self.initial_value <= 0:
            return 0.0
        return (self.current_value - self.initial_value) / self.initial_value * 100.0
