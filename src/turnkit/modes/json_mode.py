"""JSON mode: outputs agent events as JSONL."""

from __future__ import annotations

import json
import sys
from typing import IO, Any

from turnkit.events import (
    AGENT_END,
    MESSAGE_APPENDED,
    STREAM_EVENT,
    AgentEndEvent,
    AgentEvent,
    MessageAppendedEvent,
    StreamEventEnvelope,
)


def event_to_dict(event: AgentEvent) -> dict[str, Any] | None:
    """
    Wire shape for one agent event, or ``None`` if it is not exported.

    Canonical stream events are written as ``StreamEvent.to_dict()`` plus
    the turn number; lifecycle markers as ``{"type": ..., ...fields}``.
    """
    data = event.data
    if event.type == STREAM_EVENT and isinstance(data, StreamEventEnvelope):
        return {**data.event.to_dict(), "turn": data.turn}
    if event.type == MESSAGE_APPENDED and isinstance(data, MessageAppendedEvent):
        return {"type": event.type, "message": data.message.to_dict()}
    if event.type == AGENT_END and isinstance(data, AgentEndEvent):
        return {
            "type": event.type,
            "stop_reason": data.stop_reason,
            "total_turns": data.total_turns,
            "error": data.error,
        }
    if data is None:
        return {"type": event.type}
    fields = getattr(data, "__dataclass_fields__", None)
    if fields is None:
        return None
    payload: dict[str, Any] = {"type": event.type}
    for name in fields:
        value = getattr(data, name)
        if isinstance(value, (str, int, float, bool, type(None), list, dict)):
            payload[name] = value
    return payload


class JsonMode:
    """Single-shot mode that writes every agent event as JSONL.

    Usage:
        mode = JsonMode()
        await mode.run(loop, "prompt text")
    """

    def __init__(self, output: IO[str] | None = None) -> None:
        self._output = output or sys.stdout

    async def run(self, loop: Any, prompt: str) -> None:
        """Run ``loop`` on ``prompt``, writing one JSON object per event."""
        async for event in loop.stream(prompt):
            record = event_to_dict(event)
            if record is None:
                continue
            self._output.write(json.dumps(record, default=str) + "\n")
            self._output.flush()
