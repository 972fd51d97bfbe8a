"""
Model metadata, token usage, and thinking budgets.

The ModelRegistry maps model ids to their context window and output limits.
The agent loop uses it to size the compaction trigger and to clamp
``max_tokens`` when a thinking budget is requested.

Example:
    from turnkit.model_registry import ModelRegistry

    registry = ModelRegistry()
    registry.load_defaults()

    model = registry.get("claude-sonnet-4-20250514")
    print(model.context_window)  # 200000
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Thinking budget levels
# ---------------------------------------------------------------------------

ThinkingLevel = Literal["off", "minimal", "low", "medium", "high", "xhigh"]

DEFAULT_THINKING_BUDGETS: dict[str, int] = {
    "minimal": 1024,
    "low": 2048,
    "medium": 8192,
    "high": 16384,
    "xhigh": 16384,
}


@dataclass
class TokenUsage:
    """Token counts for a single request, or a running total."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    reasoning_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
            + self.reasoning_tokens
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "reasoning_tokens": self.reasoning_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenUsage:
        data = data or {}
        return cls(
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cache_read_tokens=int(data.get("cache_read_tokens", 0)),
            cache_write_tokens=int(data.get("cache_write_tokens", 0)),
            reasoning_tokens=int(data.get("reasoning_tokens", 0)),
        )

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
        )

    def __iadd__(self, other: TokenUsage) -> TokenUsage:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens
        self.reasoning_tokens += other.reasoning_tokens
        return self


@dataclass
class ModelDefinition:
    """
    Metadata for an LLM model.

    Attributes:
        id: Model identifier (e.g., "gpt-4o", "claude-sonnet-4-20250514").
        provider: Provider name, used to pick the adapter and credential.
        context_window: Maximum input tokens the model accepts.
        max_output_tokens: Maximum tokens the model can generate.
        reasoning: Whether the model supports extended thinking.
    """

    id: str
    provider: str
    display_name: str = ""
    context_window: int = 128_000
    max_output_tokens: int = 4096
    reasoning: bool = False
    capabilities: set[str] = field(default_factory=lambda: {"text", "tool_use"})

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.id


class ModelRegistry:
    """Registry of model definitions keyed by id."""

    def __init__(self) -> None:
        self._models: dict[str, ModelDefinition] = {}

    def register(self, model: ModelDefinition) -> None:
        """Register a model definition. Overwrites any existing entry with the same ID."""
        self._models[model.id] = model

    def get(self, model_id: str) -> ModelDefinition | None:
        return self._models.get(model_id)

    def list_by_provider(self, provider: str) -> list[ModelDefinition]:
        return [m for m in self._models.values() if m.provider == provider]

    def all(self) -> list[ModelDefinition]:
        return list(self._models.values())

    def load_defaults(self) -> int:
        """Load the built-in model definitions. Returns the number loaded."""
        models = _default_models()
        for model in models:
            self.register(model)
        return len(models)

    def load_from_dicts(self, model_dicts: list[dict[str, Any]]) -> int:
        """Load models from dictionaries (e.g., a YAML config section)."""
        count = 0
        for d in model_dicts:
            caps = d.get("capabilities", ["text", "tool_use"])
            self.register(
                ModelDefinition(
                    id=d["id"],
                    provider=d.get("provider", ""),
                    display_name=d.get("display_name", ""),
                    context_window=d.get("context_window", 128_000),
                    max_output_tokens=d.get("max_output_tokens", 4096),
                    reasoning=d.get("reasoning", False),
                    capabilities=set(caps),
                )
            )
            count += 1
        return count


def _default_models() -> list[ModelDefinition]:
    return [
        ModelDefinition(
            id="claude-sonnet-4-20250514",
            provider="anthropic",
            display_name="Claude Sonnet 4",
            context_window=200_000,
            max_output_tokens=16_000,
            reasoning=True,
            capabilities={"text", "image", "tool_use", "reasoning"},
        ),
        ModelDefinition(
            id="claude-haiku-4-20250414",
            provider="anthropic",
            display_name="Claude Haiku 4",
            context_window=200_000,
            max_output_tokens=8_192,
        ),
        ModelDefinition(
            id="gpt-4o",
            provider="openai",
            display_name="GPT-4o",
            context_window=128_000,
            max_output_tokens=16_384,
        ),
        ModelDefinition(
            id="o4-mini",
            provider="openai",
            display_name="o4-mini",
            context_window=200_000,
            max_output_tokens=100_000,
            reasoning=True,
            capabilities={"text", "tool_use", "reasoning"},
        ),
    ]


# ---------------------------------------------------------------------------
# Thinking budget helpers
# ---------------------------------------------------------------------------


def map_thinking_level_to_openai_effort(
    level: ThinkingLevel,
) -> Literal["low", "medium", "high"]:
    """Map a ThinkingLevel to OpenAI's reasoning_effort parameter."""
    mapping: dict[ThinkingLevel, Literal["low", "medium", "high"]] = {
        "off": "low",
        "minimal": "low",
        "low": "low",
        "medium": "medium",
        "high": "high",
        "xhigh": "high",
    }
    return mapping[level]


def adjust_max_tokens_for_thinking(
    base_max_tokens: int,
    model_max_tokens: int,
    level: ThinkingLevel,
    custom_budgets: dict[str, int] | None = None,
) -> tuple[int, int]:
    """Calculate max_tokens and thinking budget for a given thinking level.

    Returns:
        (max_tokens, thinking_budget) where max_tokens includes the thinking
        budget. When level is "off", thinking_budget is 0 and max_tokens
        is returned unchanged.
    """
    if level == "off":
        return base_max_tokens, 0

    budgets = custom_budgets if custom_budgets is not None else DEFAULT_THINKING_BUDGETS
    thinking_budget = budgets.get(level, DEFAULT_THINKING_BUDGETS.get(level, 8192))

    required = base_max_tokens + thinking_budget
    max_tokens = min(required, model_max_tokens)
    thinking_budget = min(thinking_budget, max_tokens - 1)

    return max_tokens, thinking_budget
