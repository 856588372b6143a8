"""
Risk Gate - validates a proposed trade size against the configured limits

Checks run in a fixed order and carry the (possibly reduced) size forward,
so the approved size is the largest one that satisfies every limit. Any
unexpected error rejects the trade.
"""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import func, select

from models.database import AsyncSessionLocal, Trade, TradeStatus
from services.ledger import BudgetLedger
from utils.logger import get_logger

logger = get_logger("risk_gate")


def _amount(value: float) -> str:
    """Render a dollar amount without float noise (10 -> "10", 12.5 -> "12.5")."""
    text = f"{float(value):.6f}".rstrip("0").rstrip(".")
    return text or "0"


@dataclass
class RiskDecision:
    approved: bool
    adjusted_size: float
    reasons: list[str] = field(default_factory=list)
    reason: Optional[str] = None  # Set when rejected

    def to_dict(self) -> dict:
        return {
            "approved": self.approved,
            "adjusted_size": self.adjusted_size,
            "reasons": list(self.reasons),
            "reason": self.reason,
        }


class RiskGate:
    def __init__(self, ledger: Optional[BudgetLedger] = None, session_factory=AsyncSessionLocal):
        self._session_factory = session_factory
        self.ledger = ledger or BudgetLedger(session_factory)

    async def validate_trade(
        self, market_id: str, proposed_size: float, confidence: float
    ) -> RiskDecision:
        """Approve, shrink or reject a trade. Read-only: never writes state."""
        try:
            return await self._validate(market_id, float(proposed_size), float(confidence))
        except Exception as e:
            logger.error("Risk validation error", market_id=market_id, error=str(e))
            return self._reject(f"Risk validation failed: {e}", [])

    async def _validate(self, market_id: str, size: float, confidence: float) -> RiskDecision:
        reasons: list[str] = []

        risk = await self.ledger.get_risk_config()
        if risk is None:
            return self._reject("Risk configuration not found", reasons)

        min_confidence = float(risk.min_confidence_threshold)
        if confidence < min_confidence:
            return self._reject(
                f"Confidence {confidence:.1%} below minimum threshold {min_confidence:.0%}",
                reasons,
            )

        max_bet = float(risk.max_bet_size)
        if size > max_bet:
            reasons.append(f"Bet size adjusted from ${_amount(size)} to maximum ${_amount(max_bet)}")
            size = max_bet

        if size <= 0:
            return self._reject("Proposed size must be positive", reasons)

        daily_budget = float(risk.daily_budget)
        spent = await self.ledger.get_spent_today()
        remaining = daily_budget - spent
        if remaining <= 0:
            return self._reject(
                f"Daily budget exhausted (${_amount(spent)}/${_amount(daily_budget)})", reasons
            )
        if size > remaining:
            reasons.append(
                f"Bet size adjusted from ${_amount(size)} to remaining budget ${remaining:.2f}"
            )
            size = remaining

        open_count, exposure = await self._open_position_stats(market_id)
        if open_count >= risk.max_open_positions:
            return self._reject(
                f"Maximum open positions reached ({open_count}/{risk.max_open_positions})",
                reasons,
            )

        max_exposure = float(risk.max_market_exposure)
        allowed = max_exposure - exposure
        if allowed <= 0:
            return self._reject(
                f"Market exposure limit reached (${exposure:.2f}/${_amount(max_exposure)})",
                reasons,
            )
        if size > allowed:
            reasons.append(
                f"Bet size adjusted from ${_amount(size)} to maintain market exposure "
                f"limit ${allowed:.2f}"
            )
            size = allowed

        for note in reasons:
            logger.info(note, market_id=market_id)
        return RiskDecision(approved=True, adjusted_size=size, reasons=reasons)

    async def _open_position_stats(self, market_id: str) -> tuple[int, float]:
        """(open positions across all markets, open exposure in ``market_id``)"""
        executed = TradeStatus.EXECUTED.value
        async with self._session_factory() as session:
            open_count = (
                await session.execute(
                    select(func.count(Trade.id)).where(Trade.status == executed)
                )
            ).scalar_one()
            exposure = (
                await session.execute(
                    select(func.coalesce(func.sum(Trade.size), 0)).where(
                        Trade.status == executed, Trade.market_id == market_id
                    )
                )
            ).scalar_one()
        return int(open_count or 0), float(exposure or 0.0)

    def _reject(self, reason: str, reasons: list[str]) -> RiskDecision:
        logger.warning("Trade rejected by risk gate", reason=reason)
        return RiskDecision(
            approved=False, adjusted_size=0.0, reasons=[*reasons, reason], reason=reason
        )
