"""
Scripted adapter: replays pre-built event sequences.

Each call to ``open_turn`` consumes the next script entry. An entry is
either a list of :class:`StreamEvent` (streamed in order, optionally with
a delay between events) or an exception, which is raised when the attempt
opens so retry handling can be exercised.

Example:
    adapter = ScriptedAdapter([
        ProviderError("slow down", kind="rate_limit", status_code=429),
        [StreamEvent.text_delta("4"), StreamEvent.stop("end_turn")],
    ])
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any, Union

from turnkit.adapters.base import ProviderAdapter, TurnRequest
from turnkit.credentials import StaticCredentialResolver
from turnkit.events import StreamEvent

ScriptEntry = Union[list[StreamEvent], BaseException]


class ScriptedAdapter(ProviderAdapter):
    """Offline adapter for tests and demos."""

    name = "scripted"
    requires_credential = False

    def __init__(
        self,
        script: list[ScriptEntry] | None = None,
        delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("credentials", StaticCredentialResolver())
        super().__init__(model=kwargs.pop("model", "scripted"), **kwargs)
        self.script: list[ScriptEntry] = list(script or [])
        self.delay = delay
        self.requests: list[TurnRequest] = []
        self.attempts = 0

    def add_turn(self, *events: StreamEvent) -> None:
        self.script.append(list(events))

    def add_text_turn(self, text: str, stop_reason: str = "end_turn") -> None:
        self.add_turn(StreamEvent.text_delta(text), StreamEvent.stop(stop_reason))

    async def _stream_events(
        self, request: TurnRequest, api_key: str | None
    ) -> AsyncGenerator[StreamEvent, None]:
        self.attempts += 1
        self.requests.append(request)
        if not self.script:
            raise RuntimeError("ScriptedAdapter ran out of scripted turns")
        entry = self.script.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        for event in entry:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event
