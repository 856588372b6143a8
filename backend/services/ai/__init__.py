"""
AI advisory layer.

Turns a market snapshot into a BUY_YES / BUY_NO / HOLD / SELL decision by
asking the configured LLM providers in priority order.
"""

from __future__ import annotations

from services.ai.advisor import (
    AdvisoryClient,
    AdvisoryDecision,
    AdvisoryResult,
    Decision,
    MarketSnapshot,
    PositionInfo,
    RiskConstraints,
)
from services.ai.llm_provider import (
    BaseLLMProvider,
    LLMMessage,
    LLMResponse,
    LLMProvider as LLMProviderEnum,
    build_configured_providers,
)

__all__ = [
    "AdvisoryClient",
    "AdvisoryDecision",
    "AdvisoryResult",
    "Decision",
    "MarketSnapshot",
    "PositionInfo",
    "RiskConstraints",
    "BaseLLMProvider",
    "LLMMessage",
    "LLMResponse",
    "LLMProviderEnum",
    "build_configured_providers",
]
