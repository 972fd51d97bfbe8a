"""
Anthropic messages adapter.

Example:
    adapter = AnthropicAdapter(model="claude-sonnet-4-20250514")
    request = TurnRequest(messages=[Message.user("hi")], thinking_level="low")
    async for event in adapter.open_turn(request, token):
        ...
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from anthropic import APIConnectionError, APITimeoutError, AsyncAnthropic

from turnkit.adapters.base import ProviderAdapter, TurnRequest, classify_error
from turnkit.adapters.transform import to_anthropic_messages, to_anthropic_tools
from turnkit.errors import ProviderError
from turnkit.events import StreamEvent
from turnkit.logging import get_logger
from turnkit.model_registry import ModelRegistry, TokenUsage, adjust_max_tokens_for_thinking

logger = get_logger("adapters.anthropic")

STOP_REASONS: dict[str, str] = {
    "end_turn": "end_turn",
    "stop_sequence": "end_turn",
    "pause_turn": "end_turn",
    "refusal": "end_turn",
    "max_tokens": "max_tokens",
    "tool_use": "tool_calls",
}

# Output ceiling used when the model is not in the registry
DEFAULT_MODEL_MAX_TOKENS = 64_000


def map_stop_reason(reason: str | None) -> str:
    return STOP_REASONS.get(reason or "", "end_turn")


class AnthropicAdapter(ProviderAdapter):
    """Streams Anthropic messages as canonical events."""

    name = "anthropic"

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        client: AsyncAnthropic | None = None,
        models: ModelRegistry | None = None,
        thinking_budgets: dict[str, int] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model=model, **kwargs)
        self._client = client
        self._clients: dict[str, AsyncAnthropic] = {}
        self.models = models
        self.thinking_budgets = thinking_budgets

    def _get_client(self, api_key: str | None) -> AsyncAnthropic:
        if self._client is not None:
            return self._client
        key = api_key or ""
        if key not in self._clients:
            self._clients[key] = AsyncAnthropic(
                api_key=api_key,
                base_url=self.base_url,
                timeout=self.request_timeout,
                max_retries=0,
            )
        return self._clients[key]

    def classify_error(self, error: Exception) -> ProviderError:
        if isinstance(error, APITimeoutError):
            return ProviderError(str(error), kind="timeout")
        if isinstance(error, APIConnectionError):
            return ProviderError(str(error), kind="connection")
        return classify_error(error)

    def _model_max_tokens(self, model: str) -> int:
        definition = self.models.get(model) if self.models else None
        return definition.max_output_tokens if definition else DEFAULT_MODEL_MAX_TOKENS

    def build_request(self, request: TurnRequest) -> dict[str, Any]:
        model = request.model or self.model
        max_tokens, budget = adjust_max_tokens_for_thinking(
            request.max_tokens or 4096,
            self._model_max_tokens(model),
            request.thinking_level,
            self.thinking_budgets,
        )
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": to_anthropic_messages(request.messages),
            "stream": True,
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        if request.tools:
            kwargs["tools"] = to_anthropic_tools(list(request.tools))
        if budget > 0:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
        elif request.temperature is not None:
            kwargs["temperature"] = request.temperature
        return kwargs

    async def _stream_events(
        self, request: TurnRequest, api_key: str | None
    ) -> AsyncGenerator[StreamEvent, None]:
        client = self._get_client(api_key)
        stream = await client.messages.create(**self.build_request(request))

        # content block index -> (id, name) for tool_use blocks
        tool_blocks: dict[int, tuple[str, str]] = {}
        stop_reason: str | None = None

        async for event in stream:
            etype = getattr(event, "type", "")

            if etype == "message_start":
                usage = getattr(event.message, "usage", None)
                if usage is not None:
                    yield StreamEvent.usage_event(
                        TokenUsage(
                            input_tokens=getattr(usage, "input_tokens", 0) or 0,
                            cache_read_tokens=getattr(usage, "cache_read_input_tokens", 0) or 0,
                            cache_write_tokens=(
                                getattr(usage, "cache_creation_input_tokens", 0) or 0
                            ),
                        )
                    )

            elif etype == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    tool_blocks[event.index] = (block.id, block.name)
                    yield StreamEvent.tool_call_delta(block.id, block.name, "")

            elif etype == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    yield StreamEvent.text_delta(delta.text)
                elif delta.type == "thinking_delta":
                    yield StreamEvent.reasoning_delta(delta.thinking)
                elif delta.type == "signature_delta":
                    yield StreamEvent.reasoning_delta("", signature=delta.signature)
                elif delta.type == "input_json_delta" and event.index in tool_blocks:
                    tc_id, tc_name = tool_blocks[event.index]
                    yield StreamEvent.tool_call_delta(tc_id, tc_name, delta.partial_json)

            elif etype == "content_block_stop":
                if event.index in tool_blocks:
                    tc_id, tc_name = tool_blocks[event.index]
                    yield StreamEvent.tool_call_complete(tc_id, tc_name)

            elif etype == "message_delta":
                stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
                usage = getattr(event, "usage", None)
                if usage is not None:
                    yield StreamEvent.usage_event(
                        TokenUsage(output_tokens=getattr(usage, "output_tokens", 0) or 0)
                    )

            elif etype == "message_stop":
                logger.debug("Anthropic stream finished: %s", stop_reason)
                yield StreamEvent.stop(map_stop_reason(stop_reason))
                return

            elif etype == "error":
                error = getattr(event, "error", None)
                message = getattr(error, "message", None) or "Anthropic stream error"
                kind = "server" if getattr(error, "type", "") == "overloaded_error" else "unknown"
                raise ProviderError(message, kind=kind)  # type: ignore[arg-type]

        raise ProviderError("Stream ended before message_stop", kind="connection")
