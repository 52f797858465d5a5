# tests/observability/test_token_tracker.py
"""Tests for TokenTracker exact extraction, estimation and cost attachment."""

import pytest

from agenttrace.models import TokenUsage
from agenttrace.observability import TokenTracker, UsageSource


@pytest.fixture
def tracker():
    return TokenTracker()


class TestExactUsage:
    def test_openai_usage(self, tracker):
        usage = tracker.extract_exact_usage({"usage": {"prompt_tokens": 12, "completion_tokens": 4}}, "openai")
        assert usage == TokenUsage(input_tokens=12, output_tokens=4)

    def test_missing_usage(self, tracker):
        assert tracker.extract_exact_usage({"choices": []}, "openai") is None
        assert tracker.extract_exact_usage("raw text", "openai") is None
        assert tracker.extract_exact_usage({"usage": {}}, "mistral") is None

    def test_unreadable_usage_block(self, tracker):
        assert tracker.extract_exact_usage({"usage": {"input_tokens": "many"}}, "anthropic") is None


class TestEstimation:
    def test_count_tokens_unknown_provider(self, tracker):
        assert tracker.count_tokens("abcdefghi", "mistral") == 3

    def test_estimate_usage(self, tracker):
        request = {"messages": [{"role": "user", "content": "abcd"}, {"role": "assistant", "content": "ef"}]}
        response = {"content": [{"type": "text", "text": "a" * 10}]}
        usage = tracker.estimate_usage(request, response, "claude-3-haiku-20240307", "anthropic")
        # "user: abcd\nassistant: ef" is 24 characters
        assert usage == TokenUsage(input_tokens=6, output_tokens=3)


class TestTrack:
    def test_exact_with_cost(self, tracker):
        tracked = tracker.track(
            "anthropic",
            "claude-3-5-sonnet-20241022",
            {"messages": []},
            {"usage": {"input_tokens": 1000, "output_tokens": 1000}},
        )
        assert tracked.source == UsageSource.EXACT
        assert tracked.cost.total_cost == pytest.approx(0.018)

    def test_estimated_when_usage_missing(self, tracker):
        tracked = tracker.track(
            "openai",
            "gpt-4",
            {"messages": [{"role": "user", "content": "hello"}]},
            {"choices": [{"message": {"content": "hi there"}}]},
        )
        assert tracked.source == UsageSource.ESTIMATED
        assert tracked.usage == TokenUsage(input_tokens=3, output_tokens=2)
        assert tracked.cost is not None

    def test_unpriced_model_has_no_cost(self, tracker):
        tracked = tracker.track("openai", "ft:custom", None, {"usage": {"prompt_tokens": 1, "completion_tokens": 1}})
        assert tracked.cost is None
