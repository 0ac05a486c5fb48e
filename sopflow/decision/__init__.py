"""Tiered AI decision making."""

from .providers import (
    DecisionProvider,
    ProviderResponse,
    ProviderUsage,
    PydanticAIDecisionProvider,
    StaticDecisionProvider,
)
from .router import DecisionResult, TieredDecisionRouter, parse_decision

__all__ = [
    "DecisionProvider",
    "DecisionResult",
    "ProviderResponse",
    "ProviderUsage",
    "PydanticAIDecisionProvider",
    "StaticDecisionProvider",
    "TieredDecisionRouter",
    "parse_decision",
]
