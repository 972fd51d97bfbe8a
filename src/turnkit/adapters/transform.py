"""Conversion of session messages into provider request formats."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from turnkit.models import (
    Message,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)

_VALID_ID = re.compile(r"^[A-Za-z0-9_-]+$")

MISSING_RESULT = "No result was recorded for this tool call."
CONTINUATION = "(earlier conversation omitted)"


def normalize_tool_call_id(original_id: str, max_length: int = 64) -> str:
    """Normalize a tool call ID to fit within provider limits.

    OpenAI generates long IDs (450+ chars); Anthropic requires at most 64
    characters from ``[A-Za-z0-9_-]``. Uses a SHA-256 hash prefix if the ID
    is too long or contains other characters.
    """
    if len(original_id) <= max_length and _VALID_ID.match(original_id):
        return original_id
    hash_prefix = hashlib.sha256(original_id.encode()).hexdigest()[: max_length - 4]
    return f"tc_{hash_prefix}"


def _arguments_json(block: ToolCallBlock) -> str:
    return block.raw_arguments or json.dumps(block.arguments)


def _result_ids(messages: list[Message]) -> set[str]:
    return {r.tool_call_id for m in messages for r in m.tool_results}


def _is_empty_assistant(message: Message) -> bool:
    return message.role == "assistant" and not message.text and not message.tool_calls


# ---------------------------------------------------------------------------
# OpenAI chat completions
# ---------------------------------------------------------------------------


def to_openai_messages(
    messages: list[Message], system_prompt: str | None = None
) -> list[dict[str, Any]]:
    """
    Build an OpenAI ``messages`` array.

    Reasoning blocks are not replayed. Tool calls with no recorded result
    get a synthetic error result so the request stays well-formed.
    """
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    answered = _result_ids(messages)
    for msg in messages:
        if _is_empty_assistant(msg):
            continue

        if msg.role == "user":
            result.append({"role": "user", "content": msg.text})

        elif msg.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": _arguments_json(tc)},
                    }
                    for tc in msg.tool_calls
                ]
            result.append(entry)
            for tc in msg.tool_calls:
                if tc.id not in answered:
                    result.append(
                        {"role": "tool", "tool_call_id": tc.id, "content": MISSING_RESULT}
                    )

        elif msg.role == "tool":
            for block in msg.tool_results:
                result.append(
                    {"role": "tool", "tool_call_id": block.tool_call_id, "content": block.content}
                )

    return result


def to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }
        for tool in tools
    ]


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------


def _anthropic_block(block: Any) -> dict[str, Any] | None:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text} if block.text else None
    if isinstance(block, ReasoningBlock):
        # Unsigned thinking cannot be replayed
        if not block.signature:
            return None
        return {"type": "thinking", "thinking": block.text, "signature": block.signature}
    if isinstance(block, ToolCallBlock):
        return {
            "type": "tool_use",
            "id": normalize_tool_call_id(block.id),
            "name": block.name,
            "input": dict(block.arguments),
        }
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": normalize_tool_call_id(block.tool_call_id),
            "content": block.content,
            "is_error": block.is_error,
        }
    return None


def to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """
    Build an Anthropic ``messages`` array.

    Tool results travel as ``user`` messages; consecutive same-role entries
    are merged so roles alternate. Ids are normalized to Anthropic's limits.
    """
    answered = _result_ids(messages)
    entries: list[dict[str, Any]] = []

    def push(role: str, content: list[dict[str, Any]]) -> None:
        if not content:
            return
        if entries and entries[-1]["role"] == role:
            entries[-1]["content"].extend(content)
        else:
            entries.append({"role": role, "content": content})

    for msg in messages:
        if _is_empty_assistant(msg):
            continue
        role = "assistant" if msg.role == "assistant" else "user"
        blocks = [b for b in (_anthropic_block(block) for block in msg.content) if b]
        push(role, blocks)

        if msg.role == "assistant":
            orphans = [tc for tc in msg.tool_calls if tc.id not in answered]
            push(
                "user",
                [
                    {
                        "type": "tool_result",
                        "tool_use_id": normalize_tool_call_id(tc.id),
                        "content": MISSING_RESULT,
                        "is_error": True,
                    }
                    for tc in orphans
                ],
            )

    # The first message must come from the user (e.g. after a truncating compaction)
    if entries and entries[0]["role"] == "assistant":
        entries.insert(0, {"role": "user", "content": [{"type": "text", "text": CONTINUATION}]})
    return entries


def to_anthropic_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool["name"],
            "description": tool["description"],
            "input_schema": tool["parameters"],
        }
        for tool in tools
    ]
