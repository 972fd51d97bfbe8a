"""
Canonical stream events and the agent lifecycle event bus.

Every provider adapter normalizes its wire protocol into :class:`StreamEvent`
records. The agent loop re-publishes them on an :class:`EventBus` together
with lifecycle events (turn start/end, tool execution, steering, compaction)
so UIs, loggers, and extensions can observe, and in some cases modify, what
the loop does.

Example:
    from turnkit.events import BEFORE_TOOL_CALL, EventBus, ToolCallEventResult

    bus = EventBus()

    @bus.on(BEFORE_TOOL_CALL)
    async def guard(event):
        if "rm -rf" in event.args.get("command", ""):
            return ToolCallEventResult(block=True, reason="Dangerous command")
        return None
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from turnkit.logging import get_logger
from turnkit.model_registry import TokenUsage

logger = get_logger("events")


# ---------------------------------------------------------------------------
# Canonical stream events
# ---------------------------------------------------------------------------

TEXT_DELTA = "text-delta"
REASONING_DELTA = "reasoning-delta"
TOOL_CALL_DELTA = "tool-call-delta"
TOOL_CALL_COMPLETE = "tool-call-complete"
USAGE = "usage"
STOP = "stop"
ERROR = "error"

STREAM_EVENT_TYPES: tuple[str, ...] = (
    TEXT_DELTA,
    REASONING_DELTA,
    TOOL_CALL_DELTA,
    TOOL_CALL_COMPLETE,
    USAGE,
    STOP,
    ERROR,
)

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({STOP, ERROR})


@dataclass
class StreamEvent:
    """
    One record of the provider-agnostic event sequence.

    A single provider response is a sequence of these, in emission order,
    terminated by exactly one ``stop`` or ``error`` event:

        text-delta / reasoning-delta / tool-call-delta     (interleaved)
        tool-call-complete                                 (one per tool call)
        usage                                              (zero or more)
        stop | error                                       (exactly one)
    """

    type: str
    """One of :data:`STREAM_EVENT_TYPES`."""

    text: str = ""
    """Text for ``text-delta`` and ``reasoning-delta``."""

    signature: str | None = None
    """Opaque reasoning signature (``reasoning-delta``), when the backend sends one."""

    tool_call_id: str | None = None
    tool_name: str | None = None
    args_delta: str | None = None
    """Argument JSON fragment for ``tool-call-delta``."""

    usage: TokenUsage | None = None
    stop_reason: str | None = None
    error: dict[str, Any] | None = None
    """``{kind, message, retryable, ...}`` for ``error`` events."""

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the cross-process wire shape ``{type, ...fields}``."""
        data: dict[str, Any] = {"type": self.type}
        if self.type in (TEXT_DELTA, REASONING_DELTA):
            data["text"] = self.text
            if self.signature:
                data["signature"] = self.signature
        elif self.type in (TOOL_CALL_DELTA, TOOL_CALL_COMPLETE):
            data["tool_call_id"] = self.tool_call_id
            if self.tool_name:
                data["tool_name"] = self.tool_name
            if self.type == TOOL_CALL_DELTA:
                data["args_delta"] = self.args_delta or ""
        elif self.type == USAGE:
            data["usage"] = (self.usage or TokenUsage()).to_dict()
        elif self.type == STOP:
            data["stop_reason"] = self.stop_reason
        elif self.type == ERROR:
            data["error"] = dict(self.error or {})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamEvent:
        event_type = data.get("type")
        if event_type not in STREAM_EVENT_TYPES:
            raise ValueError(f"Unknown stream event type: {event_type!r}")
        usage = data.get("usage")
        return cls(
            type=event_type,
            text=data.get("text", ""),
            signature=data.get("signature"),
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            args_delta=data.get("args_delta"),
            usage=TokenUsage.from_dict(usage) if usage is not None else None,
            stop_reason=data.get("stop_reason"),
            error=data.get("error"),
        )

    # Constructors used by the adapters.

    @classmethod
    def text_delta(cls, text: str) -> StreamEvent:
        return cls(type=TEXT_DELTA, text=text)

    @classmethod
    def reasoning_delta(cls, text: str, signature: str | None = None) -> StreamEvent:
        return cls(type=REASONING_DELTA, text=text, signature=signature)

    @classmethod
    def tool_call_delta(cls, tool_call_id: str, tool_name: str | None, args_delta: str) -> StreamEvent:
        return cls(
            type=TOOL_CALL_DELTA,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            args_delta=args_delta,
        )

    @classmethod
    def tool_call_complete(cls, tool_call_id: str, tool_name: str | None = None) -> StreamEvent:
        return cls(type=TOOL_CALL_COMPLETE, tool_call_id=tool_call_id, tool_name=tool_name)

    @classmethod
    def usage_event(cls, usage: TokenUsage) -> StreamEvent:
        return cls(type=USAGE, usage=usage)

    @classmethod
    def stop(cls, stop_reason: str) -> StreamEvent:
        return cls(type=STOP, stop_reason=stop_reason)

    @classmethod
    def error_event(cls, error: dict[str, Any]) -> StreamEvent:
        return cls(type=ERROR, error=error)


# ---------------------------------------------------------------------------
# Lifecycle events
# ---------------------------------------------------------------------------

AGENT_START = "agent_start"
AGENT_END = "agent_end"
TURN_START = "turn_start"
TURN_END = "turn_end"
STREAM_EVENT = "stream_event"
MESSAGE_APPENDED = "message_appended"
BEFORE_TOOL_CALL = "before_tool_call"
AFTER_TOOL_RESULT = "after_tool_result"
TOOL_EXECUTION_UPDATE = "tool_execution_update"
STEERING = "steering"
FOLLOW_UP = "follow_up"
COMPACTION = "compaction"


@dataclass
class AgentStartEvent:
    """Emitted once per ``run()`` before the first model request."""

    user_input: str
    session_id: str
    model: str


@dataclass
class AgentEndEvent:
    """Emitted when the loop becomes terminal."""

    session_id: str
    total_turns: int
    stop_reason: str = ""  # end_turn, max_tokens, aborted, error, max_turns
    error: dict[str, Any] | None = None


@dataclass
class TurnStartEvent:
    turn: int
    message_count: int  # messages sent to the model this turn


@dataclass
class TurnEndEvent:
    turn: int
    stop_reason: str
    tool_call_count: int = 0
    message_id: str | None = None


@dataclass
class StreamEventEnvelope:
    """A canonical stream event re-published by the loop, tagged with its turn."""

    turn: int
    event: StreamEvent


@dataclass
class MessageAppendedEvent:
    message: Any  # turnkit.models.Message


@dataclass
class BeforeToolCallEvent:
    """Emitted before a tool is executed. Handler can block or modify args."""

    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    turn: int


@dataclass
class ToolCallEventResult:
    """Result returned by a before_tool_call handler."""

    block: bool = False
    reason: str = ""
    modified_args: dict[str, Any] | None = None


@dataclass
class AfterToolResultEvent:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    result: str
    is_error: bool
    turn: int


@dataclass
class ToolResultEventResult:
    """Result returned by an after_tool_result handler."""

    modified_result: str | None = None


@dataclass
class ToolExecutionUpdateEvent:
    """Emitted when a tool produces intermediate output during execution."""

    tool_call_id: str
    tool_name: str
    output: str
    turn: int


@dataclass
class SteeringEvent:
    turn: int
    message: str
    discarded_blocks: int = 0


@dataclass
class FollowUpEvent:
    turn: int
    message: str


@dataclass
class CompactionEvent:
    record: Any  # turnkit.session.models.CompactionRecord
    truncated: bool = False


@dataclass
class AgentEvent:
    """Uniform wrapper yielded by ``AgentLoop.stream()``."""

    type: str
    data: Any = None


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

EventHandler = Callable[..., Any]


@dataclass
class _HandlerEntry:
    event: str
    handler: EventHandler
    priority: int = 0  # lower runs first
    source: str = ""


@dataclass
class EventBus:
    """
    Publish/subscribe channel for lifecycle events.

    Handlers are called in priority order (lower first) and may be sync or
    async. Some events accept handler return values that change loop
    behaviour (e.g. blocking a tool call). A handler that raises is logged
    and skipped; it never breaks the loop.

    Usage:
        bus = EventBus()

        @bus.on("turn_end")
        def on_turn_end(event: TurnEndEvent):
            print(event.stop_reason)

        unsub = bus.on("agent_end", lambda e: print(e.stop_reason))
        unsub()
    """

    _handlers: list[_HandlerEntry] = field(default_factory=list)

    def on(
        self,
        event: str,
        handler: EventHandler | None = None,
        priority: int = 0,
        source: str = "",
    ) -> Callable[[], None] | Callable[[EventHandler], EventHandler]:
        """
        Register an event handler.

        Called with a handler it returns an unsubscribe function; called
        without one it works as a decorator. ``event="*"`` subscribes to
        every event; such handlers receive an :class:`AgentEvent`.
        """
        if handler is not None:
            entry = _HandlerEntry(event=event, handler=handler, priority=priority, source=source)
            self._handlers.append(entry)

            def unsubscribe() -> None:
                if entry in self._handlers:
                    self._handlers.remove(entry)

            return unsubscribe

        def decorator(fn: EventHandler) -> EventHandler:
            self.on(event, fn, priority=priority, source=source)
            return fn

        return decorator

    def off(self, event: str, handler: EventHandler) -> None:
        self._handlers = [
            h for h in self._handlers if not (h.event == event and h.handler is handler)
        ]

    def off_by_source(self, source: str) -> int:
        """Remove all handlers registered by a given source. Returns count removed."""
        before = len(self._handlers)
        self._handlers = [h for h in self._handlers if h.source != source]
        return before - len(self._handlers)

    def clear(self, event: str | None = None) -> None:
        if event is None:
            self._handlers.clear()
        else:
            self._handlers = [h for h in self._handlers if h.event != event]

    def _relevant(self, event: str) -> list[_HandlerEntry]:
        return sorted(
            (h for h in self._handlers if h.event in (event, "*")),
            key=lambda h: h.priority,
        )

    async def emit(self, event: str, data: Any = None) -> list[Any]:
        """
        Emit an event and collect handler results.

        Returns:
            List of non-None results from handlers
        """
        results: list[Any] = []
        for entry in self._relevant(event):
            payload = AgentEvent(type=event, data=data) if entry.event == "*" else data
            try:
                result = entry.handler(payload)
                if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                    result = await result
                if result is not None:
                    results.append(result)
            except Exception as e:
                logger.warning(
                    "Event handler error (event=%s, source=%s): %s",
                    event,
                    entry.source,
                    e,
                )
        return results

    def emit_sync(self, event: str, data: Any = None) -> list[Any]:
        """Emit an event calling only sync handlers; async ones are skipped."""
        results: list[Any] = []
        for entry in self._relevant(event):
            payload = AgentEvent(type=event, data=data) if entry.event == "*" else data
            try:
                result = entry.handler(payload)
                if asyncio.iscoroutine(result):
                    result.close()
                    logger.warning(
                        "Async handler skipped in sync emit (event=%s, source=%s)",
                        event,
                        entry.source,
                    )
                    continue
                if result is not None:
                    results.append(result)
            except Exception as e:
                logger.warning(
                    "Event handler error (event=%s, source=%s): %s",
                    event,
                    entry.source,
                    e,
                )
        return results

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def has_handlers(self, event: str) -> bool:
        return any(h.event in (event, "*") for h in self._handlers)
