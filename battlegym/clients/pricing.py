"""
BattleGym — Provider Pricing

Per-model token prices used to turn LLM usage into ledger amounts.
Prices are USD.
"""

from __future__ import annotations

from decimal import Decimal

_PER_MILLION = Decimal("1000000")

# model → (input price per 1M tokens, output price per 1M tokens)
TOKEN_PRICES: dict[str, tuple[Decimal, Decimal]] = {
    "gpt-4o-mini": (Decimal("0.15"), Decimal("0.60")),
    "gpt-4o": (Decimal("2.50"), Decimal("10.00")),
    "claude-sonnet-4-20250514": (Decimal("3.00"), Decimal("15.00")),
    "claude-3-5-haiku-latest": (Decimal("0.80"), Decimal("4.00")),
}

# Unknown models are priced at the standard tier so spend is never under-reported
_FALLBACK_MODEL = "gpt-4o"


def _prices_for(model: str) -> tuple[Decimal, Decimal]:
    if model in TOKEN_PRICES:
        return TOKEN_PRICES[model]
    # Dated snapshots ("gpt-4o-mini-2024-07-18") price like their base model
    for name in sorted(TOKEN_PRICES, key=len, reverse=True):
        if model.startswith(name):
            return TOKEN_PRICES[name]
    return TOKEN_PRICES[_FALLBACK_MODEL]


def token_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    """USD cost of one completion."""
    input_price, output_price = _prices_for(model)
    return (input_price * input_tokens + output_price * output_tokens) / _PER_MILLION

