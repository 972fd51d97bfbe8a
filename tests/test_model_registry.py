"""Tests for the model registry, token usage, and thinking budgets."""

import pytest

from turnkit.model_registry import (
    DEFAULT_THINKING_BUDGETS,
    ModelDefinition,
    ModelRegistry,
    TokenUsage,
    adjust_max_tokens_for_thinking,
    map_thinking_level_to_openai_effort,
)


class TestTokenUsage:
    def test_total_and_addition(self):
        a = TokenUsage(input_tokens=10, output_tokens=5, cache_read_tokens=2)
        b = TokenUsage(input_tokens=1, reasoning_tokens=3)

        assert (a + b).total_tokens == 21
        a += b
        assert a == TokenUsage(input_tokens=11, output_tokens=5, cache_read_tokens=2, reasoning_tokens=3)

    def test_dict_round_trip(self):
        usage = TokenUsage(1, 2, 3, 4, 5)
        assert TokenUsage.from_dict(usage.to_dict()) == usage
        assert TokenUsage.from_dict(None) == TokenUsage()


class TestModelRegistry:
    def test_defaults(self):
        registry = ModelRegistry()
        count = registry.load_defaults()

        assert count == len(registry.all())
        sonnet = registry.get("claude-sonnet-4-20250514")
        assert sonnet.context_window == 200_000
        assert sonnet.reasoning
        assert {m.id for m in registry.list_by_provider("openai")} == {"gpt-4o", "o4-mini"}

    def test_load_from_dicts(self):
        registry = ModelRegistry()
        registry.load_from_dicts(
            [{"id": "local-7b", "provider": "ollama", "context_window": 8192, "capabilities": ["text"]}]
        )

        model = registry.get("local-7b")
        assert model.display_name == "local-7b"
        assert model.context_window == 8192
        assert model.capabilities == {"text"}

    def test_register_overwrites(self):
        registry = ModelRegistry()
        registry.register(ModelDefinition(id="m", provider="a"))
        registry.register(ModelDefinition(id="m", provider="b"))

        assert registry.get("m").provider == "b"
        assert registry.get("missing") is None


class TestThinkingBudget:
    def test_off(self):
        assert adjust_max_tokens_for_thinking(4096, 16_000, "off") == (4096, 0)

    def test_budget_added(self):
        assert adjust_max_tokens_for_thinking(4096, 64_000, "medium") == (
            4096 + DEFAULT_THINKING_BUDGETS["medium"],
            DEFAULT_THINKING_BUDGETS["medium"],
        )

    def test_clamped_to_model_limit(self):
        max_tokens, budget = adjust_max_tokens_for_thinking(8000, 10_000, "high")

        assert max_tokens == 10_000
        assert budget == 9_999

    def test_custom_budgets(self):
        assert adjust_max_tokens_for_thinking(1000, 64_000, "low", {"low": 500}) == (1500, 500)

    @pytest.mark.parametrize(
        "level, effort",
        [("minimal", "low"), ("low", "low"), ("medium", "medium"), ("high", "high"), ("xhigh", "high")],
    )
    def test_openai_effort(self, level, effort):
        assert map_thinking_level_to_openai_effort(level) == effort
