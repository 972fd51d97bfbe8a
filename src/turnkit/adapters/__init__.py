"""
Provider adapters.

Every adapter exposes the same ``open_turn(request, cancel)`` interface and
yields canonical :class:`~turnkit.events.StreamEvent` records.
"""

from turnkit.adapters.anthropic import AnthropicAdapter
from turnkit.adapters.base import (
    ProviderAdapter,
    ToolDefinition,
    TurnRequest,
    classify_error,
    classify_status,
)
from turnkit.adapters.openai import OpenAIAdapter
from turnkit.adapters.registry import AdapterRegistry, create_default_registry
from turnkit.adapters.scripted import ScriptedAdapter
from turnkit.adapters.transform import (
    normalize_tool_call_id,
    to_anthropic_messages,
    to_openai_messages,
)

__all__ = [
    "AdapterRegistry",
    "AnthropicAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ScriptedAdapter",
    "ToolDefinition",
    "TurnRequest",
    "classify_error",
    "classify_status",
    "create_default_registry",
    "normalize_tool_call_id",
    "to_anthropic_messages",
    "to_openai_messages",
]
