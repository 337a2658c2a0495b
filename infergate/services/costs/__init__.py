from __future__ import annotations

# Re-export cost services for centralized imports.

from infergate.services.costs.metering import (
    USAGE_SOURCE_ESTIMATED,
    USAGE_SOURCE_PROVIDER,
    TokenUsage,
    estimate_prompt_tokens,
    estimate_tokens,
    estimate_usage,
)
from infergate.services.costs.pricing import (
    COST_QUANTUM,
    DEFAULT_PRICE_TABLE,
    ModelPrice,
    PriceTable,
    estimate_cost,
)

__all__ = [
    "USAGE_SOURCE_ESTIMATED",
    "USAGE_SOURCE_PROVIDER",
    "TokenUsage",
    "estimate_prompt_tokens",
    "estimate_tokens",
    "estimate_usage",
    "COST_QUANTUM",
    "DEFAULT_PRICE_TABLE",
    "ModelPrice",
    "PriceTable",
    "estimate_cost",
]
