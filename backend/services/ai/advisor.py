"""
Advisory client for the AI trading loop.

Builds the market-analysis prompt, asks each configured LLM provider in
turn, and parses the reply into a validated trading decision. Providers
that fail (transport, auth, unusable output) are skipped in favor of the
next one; when all fail the caller gets an explicit failed result whose
decision is a zero-confidence HOLD.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from services.ai.llm_provider import (
    BaseLLMProvider,
    _parse_structured_json_content,
    build_configured_providers,
)

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    BUY_YES = "BUY_YES"
    BUY_NO = "BUY_NO"
    HOLD = "HOLD"
    SELL = "SELL"


FLAT_DECISIONS = (Decision.BUY_YES, Decision.BUY_NO, Decision.HOLD)
HOLDING_DECISIONS = (Decision.HOLD, Decision.SELL)

# Some models answer with the outcome-qualified form when holding
_SELL_ALIASES = {"SELL_YES", "SELL_NO"}


def allowed_decisions(has_position: bool) -> tuple[Decision, ...]:
    return HOLDING_DECISIONS if has_position else FLAT_DECISIONS


# ==================== INPUT SHAPES ====================


@dataclass
class PositionInfo:
    """The open position held in a market, valued at the current price"""

    outcome: str
    size: float  # Currency spent
    entry_price: float
    shares: float
    current_price: float
    current_value: float
    unrealized_pnl: float


@dataclass
class MarketSnapshot:
    market_id: str
    question: str
    yes_price: float
    no_price: float
    volume_24h: float
    liquidity: float
    hours_remaining: float
    condition_id: str = ""
    end_date: Optional[str] = None
    position: Optional[PositionInfo] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RiskConstraints:
    max_bet_size: float
    min_confidence: float


# ==================== OUTPUT SHAPES ====================


@dataclass
class AdvisoryDecision:
    decision: Decision
    confidence: float
    reasoning: str
    suggested_size: float = 0.0
    key_factors: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)

    @classmethod
    def hold(cls, note: str) -> "AdvisoryDecision":
        return cls(decision=Decision.HOLD, confidence=0.0, reasoning=note)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["decision"] = self.decision.value
        return data


@dataclass
class AdvisoryResult:
    ok: bool
    decision: AdvisoryDecision
    provider: Optional[str] = None
    prompt: str = ""
    raw_response: Optional[str] = None
    errors: list[str] = field(default_factory=list)


# ==================== PROMPT ====================


def _pct(price: float) -> str:
    return f"{price * 100:.1f}%"


def build_analysis_prompt(snapshot: MarketSnapshot, constraints: RiskConstraints) -> str:
    position = snapshot.position
    has_position = position is not None

    if has_position:
        sign = "+" if position.unrealized_pnl >= 0 else "-"
        position_block = (
            "CURRENT POSITION:\n"
            f"You hold: {position.outcome} shares ({position.shares:.2f} shares)\n"
            f"Entry price: ${position.entry_price:.3f}\n"
            f"Position size: ${position.size:.2f}\n"
            f"Current value: ${position.current_value:.2f}\n"
            f"Unrealized P&L: {sign}${abs(position.unrealized_pnl):.2f}"
        )
        task = (
            "You already have a position in this market. Decide whether to:\n"
            "- HOLD: Keep your position and wait for resolution\n"
            "- SELL: Exit your position now at the current market price "
            "(to lock in profit or cut losses)\n"
            "Consider: Has the market moved in your favor? Has new information "
            "changed the outlook? Is it better to take profit now or hold to resolution?"
        )
        guidelines = (
            "- Don't sell just because of small unrealized gains - consider if "
            "holding to resolution is better\n"
            "- DO sell if your thesis has changed or you want to lock in significant profit"
        )
        decision_shape = '"HOLD" | "SELL"'
        size_shape = "0"
    else:
        position_block = "CURRENT POSITION: None"
        task = (
            "You have no position in this market. Decide whether to:\n"
            "- BUY_YES: Buy YES shares if you believe the probability is underpriced\n"
            "- BUY_NO: Buy NO shares if you believe the probability is overpriced\n"
            "- HOLD: Skip this market if you don't see a clear edge"
        )
        guidelines = "- Only enter a position once per market - make it count"
        decision_shape = '"BUY_YES" | "BUY_NO" | "HOLD"'
        size_shape = "dollar_amount_within_max_bet_size"

    return f"""You are a trading analyst for prediction markets on Polymarket. Your task is to analyze the following market and provide a trading recommendation.

MARKET INFORMATION:
Question: {snapshot.question}
Current YES price: ${snapshot.yes_price:.3f} ({_pct(snapshot.yes_price)} implied probability)
Current NO price: ${snapshot.no_price:.3f} ({_pct(snapshot.no_price)} implied probability)
24h Volume: ${snapshot.volume_24h:,.2f}
Liquidity: ${snapshot.liquidity:,.2f}
Time until close: {snapshot.hours_remaining:.1f} hours

{position_block}

TRADING CONSTRAINTS:
Maximum bet size: ${constraints.max_bet_size:.2f}
Minimum confidence threshold: {constraints.min_confidence * 100:.0f}%

YOUR TASK:
{task}

IMPORTANT GUIDELINES:
- Be conservative - only recommend trades when you have genuine conviction
- Markets are often efficient, so most prices are fair
- Account for time remaining - markets close to expiry have less opportunity for price movement
- Lower liquidity increases slippage risk
{guidelines}

Respond ONLY with a valid JSON object (no markdown, no code blocks, no <think> tags):
{{
  "decision": {decision_shape},
  "confidence": 0.0-1.0,
  "reasoning": "detailed explanation",
  "suggested_size": {size_shape},
  "key_factors": ["factor1", "factor2", "factor3"],
  "risks": ["risk1", "risk2", "risk3"]
}}"""


# ==================== PARSING ====================


def _as_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def parse_advisory_response(
    text: str, has_position: bool
) -> tuple[AdvisoryDecision, Optional[str]]:
    """
    Parse a provider reply into a decision.

    Returns ``(decision, error)``. ``error`` is None for a usable reply;
    otherwise the decision is a zero-confidence HOLD carrying the
    diagnostic in its reasoning.
    """
    try:
        payload = _parse_structured_json_content(text)
    except RuntimeError as e:
        note = f"Unparseable advisory response: {e}"
        return AdvisoryDecision.hold(note), note

    if not isinstance(payload, dict):
        note = "Advisory response is not a JSON object"
        return AdvisoryDecision.hold(note), note

    raw_decision = str(payload.get("decision") or "").strip().upper()
    if has_position and raw_decision in _SELL_ALIASES:
        raw_decision = Decision.SELL.value
    allowed = allowed_decisions(has_position)
    if raw_decision not in {d.value for d in allowed}:
        note = (
            f"Invalid decision {raw_decision or '<missing>'!r}; "
            f"expected one of {', '.join(d.value for d in allowed)}"
        )
        return AdvisoryDecision.hold(note), note

    confidence = _as_float(payload.get("confidence"))
    if confidence is None:
        note = "Advisory response has no numeric confidence"
        return AdvisoryDecision.hold(note), note

    suggested_size = _as_float(payload.get("suggested_size")) or 0.0

    decision = AdvisoryDecision(
        decision=Decision(raw_decision),
        confidence=min(1.0, max(0.0, confidence)),
        reasoning=str(payload.get("reasoning") or "").strip(),
        suggested_size=max(0.0, suggested_size),
        key_factors=_as_str_list(payload.get("key_factors")),
        risks=_as_str_list(payload.get("risks")),
    )
    return decision, None


# ==================== CLIENT ====================


class AdvisoryClient:
    """Consults providers in priority order until one returns a usable decision"""

    def __init__(self, providers: Optional[list[BaseLLMProvider]] = None):
        self._providers = providers if providers is not None else build_configured_providers()

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    async def analyze(
        self, snapshot: MarketSnapshot, constraints: RiskConstraints
    ) -> AdvisoryResult:
        has_position = snapshot.position is not None
        prompt = build_analysis_prompt(snapshot, constraints)
        errors: list[str] = []
        last_raw: Optional[str] = None

        if not self._providers:
            errors.append("No advisory providers configured")

        for provider in self._providers:
            try:
                text = await provider.complete(prompt)
            except Exception as e:
                errors.append(f"{provider.name}: {e}")
                logger.warning(
                    "Advisory provider %s failed for market %s: %s",
                    provider.name,
                    snapshot.market_id,
                    e,
                )
                continue

            last_raw = text
            decision, parse_error = parse_advisory_response(text, has_position)
            if parse_error:
                errors.append(f"{provider.name}: {parse_error}")
                logger.warning(
                    "Advisory provider %s returned unusable output for market %s: %s",
                    provider.name,
                    snapshot.market_id,
                    parse_error,
                )
                continue

            return AdvisoryResult(
                ok=True,
                decision=decision,
                provider=provider.name,
                prompt=prompt,
                raw_response=text,
                errors=errors,
            )

        return AdvisoryResult(
            ok=False,
            decision=AdvisoryDecision.hold("; ".join(errors) or "All advisory providers failed"),
            prompt=prompt,
            raw_response=last_raw,
            errors=errors,
        )
