# src/agenttrace/observability/cost_tracker.py
"""
Cost calculation for AI provider calls.

Prices come from the provider adapters' static ``PRICING`` tables
(per 1k tokens, USD) and can be extended or corrected at runtime with
:meth:`CostCalculator.add_custom_pricing` / :meth:`CostCalculator.update_pricing`.

Model lookup is exact first. When a model is missing, both the requested
name and every known name are normalised (lowercased, date suffixes such as
``-20241022`` or ``-2024-10-22`` removed, non-alphanumerics stripped) and the
first known model whose normalised name contains, or is contained in, the
requested one supplies the price. No match at all yields ``None``.

All cost figures are rounded to 5 decimal places.

Usage:
    calculator = CostCalculator()
    cost = calculator.calculate_cost(
        "anthropic",
        "claude-3-5-sonnet-20250101",
        TokenUsage(input_tokens=1000, output_tokens=500),
    )
    print(f"Cost: ${cost.total_cost:.5f}")
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from datetime import UTC, date, datetime

from ..models import CostCalculation, ModelPricing, TokenUsage
from ..providers.manager import PROVIDER_ALIASES, PROVIDER_MAP

logger = logging.getLogger(__name__)

COST_DECIMAL_PLACES = 5
DEFAULT_PRICING_MAX_AGE_DAYS = 30

# Characters per token assumed by estimate_cost
ESTIMATE_CHARS_PER_TOKEN = 4

_DATE_SUFFIX = re.compile(r"-\d{8}")
_ISO_DATE_SUFFIX = re.compile(r"-\d{4}-\d{2}-\d{2}")
_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")


# =============================================================================
# DATA MODELS
# =============================================================================


class RankedCostCalculation(CostCalculation):
    """A cost calculation with its 1-based position in a cheapest-first ranking."""

    rank: int


def normalize_model_name(model: str) -> str:
    """Comparable form of a model name, e.g. ``claude-3-5-sonnet-20241022`` -> ``claude35sonnet``."""
    normalized = model.lower()
    normalized = _DATE_SUFFIX.sub("", normalized)
    normalized = _ISO_DATE_SUFFIX.sub("", normalized)
    return _NON_ALPHANUMERIC.sub("", normalized)


def _round_cost(value: float) -> float:
    return round(value, COST_DECIMAL_PLACES)


# =============================================================================
# CALCULATOR
# =============================================================================


class CostCalculator:
    """
    Per-provider pricing tables and the arithmetic over them.

    Args:
        pricing: Initial tables as ``{provider: {model: ModelPricing}}``.
            Defaults to a copy of every adapter's built-in table.
    """

    def __init__(self, pricing: dict[str, dict[str, ModelPricing]] | None = None):
        if pricing is None:
            pricing = {name: dict(adapter_cls.PRICING) for name, adapter_cls in PROVIDER_MAP.items()}
        self._pricing: dict[str, dict[str, ModelPricing]] = {
            provider.lower(): dict(models) for provider, models in pricing.items()
        }

    @staticmethod
    def _provider_key(provider: str) -> str:
        key = provider.lower()
        return PROVIDER_ALIASES.get(key, key)

    # -------------------------------------------------------------------------
    # Cost
    # -------------------------------------------------------------------------

    def calculate_cost(self, provider: str, model: str, usage: TokenUsage) -> CostCalculation | None:
        """Cost of ``usage`` on ``model``, or None when no price is known for it."""
        provider_pricing = self._pricing.get(self._provider_key(provider))
        if not provider_pricing:
            return None

        pricing = provider_pricing.get(model)
        if pricing is None:
            pricing = self.find_similar_model(model, provider_pricing)
            if pricing is None:
                logger.debug(f"No pricing for {provider}/{model}")
                return None

        input_cost = usage.input_tokens / 1000 * pricing.input_cost_per_1k_tokens
        output_cost = usage.output_tokens / 1000 * pricing.output_cost_per_1k_tokens
        return CostCalculation(
            provider=self._provider_key(provider),
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            input_cost=_round_cost(input_cost),
            output_cost=_round_cost(output_cost),
            total_cost=_round_cost(input_cost + output_cost),
            currency=pricing.currency,
        )

    @staticmethod
    def find_similar_model(model: str, provider_pricing: dict[str, ModelPricing]) -> ModelPricing | None:
        """First entry whose normalised name overlaps the normalised ``model`` in either direction."""
        target = normalize_model_name(model)
        if not target:
            return None
        for known_model, pricing in provider_pricing.items():
            candidate = normalize_model_name(known_model)
            if candidate and (candidate in target or target in candidate):
                logger.debug(f"Using pricing of '{known_model}' for '{model}'")
                return pricing
        return None

    def estimate_cost(
        self, provider: str, model: str, input_text: str, estimated_output_tokens: int = 0
    ) -> CostCalculation | None:
        """Cost of a prospective call whose prompt is ``input_text``."""
        input_tokens = math.ceil(len(input_text) / ESTIMATE_CHARS_PER_TOKEN)
        return self.calculate_cost(
            provider,
            model,
            TokenUsage(input_tokens=input_tokens, output_tokens=max(0, int(estimated_output_tokens))),
        )

    def compare_costs(
        self, usage: TokenUsage, models: Iterable[tuple[str, str]]
    ) -> list[RankedCostCalculation]:
        """Cost of ``usage`` on each ``(provider, model)`` pair, cheapest first. Unpriced pairs are skipped."""
        calculations = [
            calculation
            for provider, model in models
            if (calculation := self.calculate_cost(provider, model, usage)) is not None
        ]
        calculations.sort(key=lambda calculation: calculation.total_cost)
        return [
            RankedCostCalculation(**calculation.model_dump(), rank=i)
            for i, calculation in enumerate(calculations, start=1)
        ]

    def get_cheapest_option(
        self, usage: TokenUsage, providers: Iterable[str] | None = None
    ) -> RankedCostCalculation | None:
        providers = list(providers) if providers is not None else self.get_supported_providers()
        candidates = [
            (provider, model) for provider in providers for model in self.get_supported_models(provider)
        ]
        ranked = self.compare_costs(usage, candidates)
        return ranked[0] if ranked else None

    # -------------------------------------------------------------------------
    # Pricing tables
    # -------------------------------------------------------------------------

    def get_model_pricing(self, provider: str, model: str) -> ModelPricing | None:
        """Exact-name pricing entry; no fallback matching."""
        return self._pricing.get(self._provider_key(provider), {}).get(model)

    def get_supported_models(self, provider: str) -> list[str]:
        return list(self._pricing.get(self._provider_key(provider), {}))

    def get_supported_providers(self) -> list[str]:
        return list(self._pricing)

    def add_custom_pricing(self, provider: str, model: str, pricing: ModelPricing) -> None:
        """Add or replace a pricing entry, creating the provider table if needed."""
        self._pricing.setdefault(self._provider_key(provider), {})[model] = pricing
        logger.info(f"Custom pricing set for {provider}/{model}")

    def update_pricing(self, provider: str, model: str, **updates) -> bool:
        """Change fields of an existing entry. Returns False if the entry does not exist."""
        provider_pricing = self._pricing.get(self._provider_key(provider))
        if not provider_pricing or model not in provider_pricing:
            return False
        current = provider_pricing[model]
        provider_pricing[model] = ModelPricing.model_validate({**current.model_dump(), **updates})
        return True

    def get_pricing_last_updated(self, provider: str, model: str) -> str | None:
        pricing = self.get_model_pricing(provider, model)
        return pricing.last_updated if pricing else None

    def is_pricing_stale(
        self,
        provider: str,
        model: str,
        max_age_days: int = DEFAULT_PRICING_MAX_AGE_DAYS,
        today: date | None = None,
    ) -> bool:
        """Whether the entry was last verified more than ``max_age_days`` ago.

        Advisory only; missing or unparseable dates count as stale.
        """
        last_updated = self.get_pricing_last_updated(provider, model)
        if not last_updated:
            return True
        try:
            updated = date.fromisoformat(last_updated[:10])
        except ValueError:
            logger.warning(f"Unparseable pricing date for {provider}/{model}: {last_updated!r}")
            return True
        today = today or datetime.now(UTC).date()
        return (today - updated).days > max_age_days
