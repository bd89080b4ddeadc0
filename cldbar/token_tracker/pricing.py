"""Static per-provider price tables and cost estimation.

Prices are USD per 1K tokens.  Models are matched by family substring
(e.g. any id containing "opus"), since model ids carry dates and versions
that change far more often than prices do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cldbar.token_tracker.models import ModelUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Per-1K-token prices for one model family."""

    input_per_1k: float
    output_per_1k: float
    cache_read_per_1k: float = 0.0
    cache_write_per_1k: float = 0.0


# Cache read is a 90% discount, cache write a 25% premium over input
CLAUDE_PRICES: dict[str, ModelPricing] = {
    "opus": ModelPricing(0.015, 0.075, 0.0015, 0.01875),
    "sonnet": ModelPricing(0.003, 0.015, 0.0003, 0.00375),
    "haiku": ModelPricing(0.00025, 0.00125, 0.000025, 0.0003125),
}

GEMINI_PRICES: dict[str, ModelPricing] = {
    "flash": ModelPricing(0.00015, 0.0006),
    "pro": ModelPricing(0.00125, 0.01),
}

ZAI_PRICES: dict[str, ModelPricing] = {
    "glm": ModelPricing(0.001, 0.004),
}

PRICE_TABLES: dict[str, dict[str, ModelPricing]] = {
    "claude": CLAUDE_PRICES,
    "gemini": GEMINI_PRICES,
    "zai": ZAI_PRICES,
}

_warned: set[tuple[str, str]] = set()


def lookup_pricing(provider_type: str, model: str) -> ModelPricing | None:
    """Return the price entry for a model, or None when the model is unknown."""
    table = PRICE_TABLES.get(provider_type, {})
    lowered = model.lower()
    for family, pricing in table.items():
        if family in lowered:
            return pricing
    return None


def estimate_cost(provider_type: str, usage: ModelUsage) -> float:
    """Cost in USD for one model's token subtotal.

    Unknown models cost nothing; a warning is logged once per model id.
    """
    pricing = lookup_pricing(provider_type, usage.model)
    if pricing is None:
        key = (provider_type, usage.model)
        if key not in _warned:
            _warned.add(key)
            logger.warning("No %s pricing for model %r; counting its cost as 0", provider_type, usage.model)
        return 0.0

    cost = (
        usage.input_tokens / 1000 * pricing.input_per_1k
        + usage.output_tokens / 1000 * pricing.output_per_1k
        + usage.cache_read_tokens / 1000 * pricing.cache_read_per_1k
        + usage.cache_write_tokens / 1000 * pricing.cache_write_per_1k
    )
    return round(cost, 4)
