from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping


# Matches the Numeric(12, 6) precision of usage_events.cost_estimate.
COST_QUANTUM = Decimal("0.000001")

_THOUSAND = Decimal("1000")


@dataclass(frozen=True)
class ModelPrice:
    # USD per 1000 tokens; equal rates express a single blended price.
    input_per_1k: Decimal
    output_per_1k: Decimal

    @classmethod
    def blended(cls, per_1k: Decimal | str) -> "ModelPrice":
        rate = Decimal(str(per_1k))
        return cls(input_per_1k=rate, output_per_1k=rate)

    @property
    def is_blended(self) -> bool:
        return self.input_per_1k == self.output_per_1k


@dataclass(frozen=True)
class PriceTable:
    """Static model -> price mapping with a fallback model for unknown ids."""

    prices: Mapping[str, ModelPrice]
    default_model: str = field(default="gpt-3.5-turbo")

    def __post_init__(self) -> None:
        if self.default_model not in self.prices:
            raise ValueError(f"default model {self.default_model!r} missing from price table")
        # Freeze the mapping so the process-wide table stays read-only after startup.
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))

    def price_for(self, model: str) -> ModelPrice:
        return self.prices.get(model) or self.prices[self.default_model]


DEFAULT_PRICE_TABLE = PriceTable(
    prices={
        # Flat blended rate of $0.002 / 1K tokens.
        "gpt-3.5-turbo": ModelPrice.blended("0.002"),
        "gpt-4o-mini": ModelPrice(input_per_1k=Decimal("0.00015"), output_per_1k=Decimal("0.0006")),
        "gpt-4o": ModelPrice(input_per_1k=Decimal("0.0025"), output_per_1k=Decimal("0.01")),
        "gpt-4": ModelPrice(input_per_1k=Decimal("0.03"), output_per_1k=Decimal("0.06")),
    },
    default_model="gpt-3.5-turbo",
)


def _to_decimal(value: int | float | Decimal) -> Decimal:
    # Normalize numeric values to Decimal for consistent rounding.
    return value if isinstance(value, Decimal) else Decimal(str(value))


def estimate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    *,
    price_table: PriceTable = DEFAULT_PRICE_TABLE,
) -> Decimal:
    """Return the USD cost of one call, quantized to the ledger precision.

    Pure and deterministic: the same (model, prompt, completion) triple always
    yields the same Decimal. Negative token counts are rejected.
    """
    if prompt_tokens < 0 or completion_tokens < 0:
        raise ValueError("token counts must be non-negative")
    price = price_table.price_for(model)
    prompt_cost = (_to_decimal(prompt_tokens) / _THOUSAND) * price.input_per_1k
    completion_cost = (_to_decimal(completion_tokens) / _THOUSAND) * price.output_per_1k
    return (prompt_cost + completion_cost).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)
