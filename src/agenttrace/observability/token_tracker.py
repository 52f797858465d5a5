# src/agenttrace/observability/token_tracker.py
"""
Token usage for traced AI calls.

Exact usage is read from the vendor's response body through its adapter.
When the body carries none, usage is estimated from character counts of
the request messages and the generated text, using the adapter's
chars-per-token ratio for the model family.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ..models import CostCalculation, TokenUsage
from ..providers.base import DEFAULT_CHARS_PER_TOKEN, BaseProviderAdapter
from ..providers.manager import ProviderManager
from .cost_tracker import CostCalculator

logger = logging.getLogger(__name__)


class UsageSource(str, Enum):
    """Where a token count came from."""

    EXACT = "exact"
    ESTIMATED = "estimated"


class TrackedUsage(BaseModel):
    """Token usage of one call with its provenance and cost."""

    provider: str
    model: str
    usage: TokenUsage
    source: UsageSource
    cost: CostCalculation | None = None


class TokenTracker:
    """
    Combines adapters and a cost calculator to account for one response.

    Args:
        providers: Adapter lookup; a default manager is created if omitted.
        cost_calculator: Pricing; a default calculator is created if omitted.
    """

    def __init__(
        self,
        providers: ProviderManager | None = None,
        cost_calculator: CostCalculator | None = None,
    ):
        self._providers = providers or ProviderManager()
        self._costs = cost_calculator or CostCalculator()

    @property
    def cost_calculator(self) -> CostCalculator:
        return self._costs

    def _adapter(self, provider: str) -> BaseProviderAdapter | None:
        return self._providers.get_adapter(provider)

    def extract_exact_usage(self, response_body: Any, provider: str) -> TokenUsage | None:
        """Vendor-reported usage in ``response_body``, or None if absent."""
        adapter = self._adapter(provider)
        if adapter is None or not isinstance(response_body, dict):
            return None
        try:
            return adapter.extract_token_usage(response_body)
        except (TypeError, ValueError) as e:
            logger.warning(f"Unreadable {provider} usage block: {e}")
            return None

    def extract_response_text(self, response_body: Any, provider: str) -> str:
        adapter = self._adapter(provider)
        return adapter.extract_response_text(response_body) if adapter else ""

    def count_tokens(self, text: str, provider: str, model: str | None = None) -> int:
        adapter = self._adapter(provider)
        if adapter is None:
            return math.ceil(len(text) / DEFAULT_CHARS_PER_TOKEN)
        return adapter.estimate_tokens(text, model)

    def estimate_usage(
        self, request_body: Any, response_body: Any, model: str, provider: str
    ) -> TokenUsage:
        """Character-count estimate of the call's input and output tokens."""
        adapter = self._adapter(provider)
        messages = adapter.extract_messages(request_body) if adapter else []
        input_text = "\n".join(f"{message['role']}: {message['content']}" for message in messages)
        output_text = self.extract_response_text(response_body, provider)
        return TokenUsage(
            input_tokens=self.count_tokens(input_text, provider, model),
            output_tokens=self.count_tokens(output_text, provider, model),
        )

    def track(self, provider: str, model: str, request_body: Any, response_body: Any) -> TrackedUsage:
        """Usage of one call, exact when the response reports it, and its cost."""
        usage = self.extract_exact_usage(response_body, provider)
        source = UsageSource.EXACT
        if usage is None:
            usage = self.estimate_usage(request_body, response_body, model, provider)
            source = UsageSource.ESTIMATED
        cost = self._costs.calculate_cost(provider, model, usage)
        logger.debug(
            f"Tracked {provider}/{model}: {usage.input_tokens} in, {usage.output_tokens} out ({source.value})"
        )
        return TrackedUsage(provider=provider, model=model, usage=usage, source=source, cost=cost)
