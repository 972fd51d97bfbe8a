"""
OpenAI chat-completions adapter.

Example:
    adapter = OpenAIAdapter(model="gpt-4o")
    async for event in adapter.open_turn(TurnRequest(messages=[...]), token):
        print(event.to_dict())
"""

from __future__ import annotations

import re
from collections.abc import AsyncGenerator
from typing import Any

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI

from turnkit.adapters.base import ProviderAdapter, TurnRequest, classify_error
from turnkit.adapters.transform import to_openai_messages, to_openai_tools
from turnkit.errors import ProviderError
from turnkit.events import StreamEvent
from turnkit.logging import get_logger
from turnkit.model_registry import TokenUsage, map_thinking_level_to_openai_effort

logger = get_logger("adapters.openai")

FINISH_REASONS: dict[str, str] = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "end_turn",
}


def map_finish_reason(reason: str | None) -> str:
    return FINISH_REASONS.get(reason or "", "end_turn")


def usage_from_openai(usage: Any) -> TokenUsage:
    prompt = getattr(usage, "prompt_tokens", 0) or 0
    completion = getattr(usage, "completion_tokens", 0) or 0
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    completion_details = getattr(usage, "completion_tokens_details", None)
    cached = getattr(prompt_details, "cached_tokens", 0) or 0
    reasoning = getattr(completion_details, "reasoning_tokens", 0) or 0
    return TokenUsage(
        input_tokens=max(0, prompt - cached),
        output_tokens=completion,
        cache_read_tokens=cached,
        reasoning_tokens=reasoning,
    )


class OpenAIAdapter(ProviderAdapter):
    """
    Streams OpenAI (and OpenAI-compatible) chat completions as canonical events.

    A pre-built ``client`` may be injected; otherwise one ``AsyncOpenAI``
    client is created per resolved API key. SDK-level retries are disabled
    because retrying is done here.
    """

    name = "openai"

    def __init__(
        self,
        model: str = "gpt-4o",
        client: AsyncOpenAI | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model=model, **kwargs)
        self._client = client
        self._clients: dict[str, AsyncOpenAI] = {}

    def _get_client(self, api_key: str | None) -> AsyncOpenAI:
        if self._client is not None:
            return self._client
        key = api_key or ""
        if key not in self._clients:
            self._clients[key] = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url,
                timeout=self.request_timeout,
                max_retries=0,
            )
        return self._clients[key]

    @staticmethod
    def _is_reasoning_model(model: str) -> bool:
        """Check if the model is a reasoning model (o1/o3/o4-mini, gpt-5 pattern)."""
        return bool(re.search(r"\bo[134]|gpt-5", model.lower()))

    def classify_error(self, error: Exception) -> ProviderError:
        if isinstance(error, APITimeoutError):
            return ProviderError(str(error), kind="timeout")
        if isinstance(error, APIConnectionError):
            return ProviderError(str(error), kind="connection")
        return classify_error(error)

    def build_request(self, request: TurnRequest) -> dict[str, Any]:
        model = request.model or self.model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(request.messages, request.system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            kwargs["tools"] = to_openai_tools(list(request.tools))

        reasoning = self._is_reasoning_model(model)
        if request.max_tokens:
            kwargs["max_completion_tokens" if reasoning else "max_tokens"] = request.max_tokens
        if request.temperature is not None and not reasoning:
            kwargs["temperature"] = request.temperature
        if request.thinking_level != "off" and reasoning:
            kwargs["reasoning_effort"] = map_thinking_level_to_openai_effort(
                request.thinking_level
            )
        return kwargs

    async def _stream_events(
        self, request: TurnRequest, api_key: str | None
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Map streaming chunks to canonical events.

        - ``delta.content`` -> text-delta
        - ``delta.reasoning_content`` (compatible servers) -> reasoning-delta
        - ``delta.tool_calls`` -> tool-call-delta, keyed by the id from the
          call's first chunk
        - ``finish_reason`` -> tool-call-complete for every open call; the
          trailing usage chunk -> usage; end of stream -> stop
        """
        client = self._get_client(api_key)
        stream = await client.chat.completions.create(**self.build_request(request))

        # index -> (id, name)
        active_calls: dict[int, tuple[str, str]] = {}
        finish_reason: str | None = None

        async for chunk in stream:
            usage = getattr(chunk, "usage", None)
            if usage is not None:
                yield StreamEvent.usage_event(usage_from_openai(usage))

            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta is not None:
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield StreamEvent.reasoning_delta(reasoning)

                if delta.content:
                    yield StreamEvent.text_delta(delta.content)

                for tc_delta in delta.tool_calls or []:
                    fn = tc_delta.function
                    if tc_delta.index not in active_calls:
                        tc_id = tc_delta.id or f"call_{tc_delta.index}"
                        tc_name = fn.name if fn and fn.name else ""
                        active_calls[tc_delta.index] = (tc_id, tc_name)
                        yield StreamEvent.tool_call_delta(tc_id, tc_name, "")
                    tc_id, tc_name = active_calls[tc_delta.index]
                    if fn and fn.arguments:
                        yield StreamEvent.tool_call_delta(tc_id, tc_name, fn.arguments)

            if choice.finish_reason is not None and finish_reason is None:
                finish_reason = choice.finish_reason
                for index in sorted(active_calls):
                    tc_id, tc_name = active_calls[index]
                    yield StreamEvent.tool_call_complete(tc_id, tc_name)

        if finish_reason is None:
            raise ProviderError("Stream ended before a finish reason", kind="connection")
        logger.debug("OpenAI stream finished: %s", finish_reason)
        yield StreamEvent.stop(map_finish_reason(finish_reason))
