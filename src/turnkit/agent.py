"""
The agent loop controller.

Drives a session through repeated model turns: build the request from the
active branch, stream the response through a provider adapter, run the
requested tools, feed the results back, and stop when the model is done,
the caller aborts, or the turn limit is reached. Steering messages
interrupt a turn in flight; follow-ups extend the conversation when it
would otherwise end.

States::

    idle -> awaiting_model -> streaming_response -> dispatching_tools -> awaiting_model
                                                 \\-> terminal

Example:
    loop = AgentLoop(
        adapter=OpenAIAdapter(model="gpt-4o"),
        session=manager.create(),
        tools=create_builtin_tools(),
    )

    result = await loop.run("What is 2+2?")
    print(result.text)

    # Or pull lifecycle and stream events as they happen
    async for event in loop.stream("List the files here"):
        print(event.type)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from typing import Any

from turnkit.accumulator import ToolCallAccumulator
from turnkit.adapters.base import ProviderAdapter, TurnRequest
from turnkit.compaction import CompactionPolicy, Compactor, Summarizer
from turnkit.config import AgentConfig
from turnkit.dispatcher import ToolDispatcher
from turnkit.errors import AgentAbortedError, CompactionError, LoopBusyError, ProviderError
from turnkit.events import (
    AFTER_TOOL_RESULT,
    AGENT_END,
    AGENT_START,
    BEFORE_TOOL_CALL,
    COMPACTION,
    ERROR,
    FOLLOW_UP,
    MESSAGE_APPENDED,
    REASONING_DELTA,
    STEERING,
    STOP,
    STREAM_EVENT,
    TEXT_DELTA,
    TOOL_CALL_DELTA,
    TOOL_EXECUTION_UPDATE,
    TURN_END,
    TURN_START,
    USAGE,
    AfterToolResultEvent,
    AgentEndEvent,
    AgentEvent,
    AgentStartEvent,
    BeforeToolCallEvent,
    CompactionEvent,
    EventBus,
    FollowUpEvent,
    MessageAppendedEvent,
    SteeringEvent,
    StreamEvent,
    StreamEventEnvelope,
    ToolCallEventResult,
    ToolExecutionUpdateEvent,
    ToolResultEventResult,
    TurnEndEvent,
    TurnStartEvent,
)
from turnkit.logging import get_logger
from turnkit.model_registry import ModelRegistry, TokenUsage
from turnkit.models import (
    ContentBlock,
    Message,
    ReasoningBlock,
    TextBlock,
    ToolCall,
    ToolResultBlock,
)
from turnkit.session.session import Session
from turnkit.steering import CancellationToken, SteeringQueue
from turnkit.tools.base import Tool
from turnkit.tools.registry import ToolRegistrar

logger = get_logger("agent")

IDLE = "idle"
AWAITING_MODEL = "awaiting_model"
STREAMING_RESPONSE = "streaming_response"
DISPATCHING_TOOLS = "dispatching_tools"
TERMINAL = "terminal"

SUMMARY_SYSTEM_PROMPT = (
    "You condense conversations between a user and a coding assistant. "
    "Write a concise summary that preserves goals, decisions, file paths, "
    "commands run and their outcomes, and any open tasks. Do not add commentary."
)

# Cap on any one message's text inside a summarization transcript
_TRANSCRIPT_ITEM_CHARS = 4000


@dataclass
class LoopResult:
    """Outcome of one :meth:`AgentLoop.run` call."""

    stop_reason: str  # end_turn, max_tokens, aborted, error, max_turns
    message: Message | None = None  # last assistant message
    turns: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: dict[str, Any] | None = None
    messages: list[Message] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.message.text if self.message is not None else ""

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _TurnOutcome:
    stop_reason: str
    message: Message | None = None
    error: dict[str, Any] | None = None
    tool_call_count: int = 0
    discarded_blocks: int = 0


class _ResponseBuilder:
    """
    Builds assistant content blocks in emission order.

    Consecutive deltas of the same kind merge into one block. A text or
    reasoning block is closed once an event of another kind follows it;
    the last one stays open until the response finishes.
    """

    def __init__(self) -> None:
        # Entries: ["text", str] | ["reasoning", str, signature] | ["tool", call_id]
        self._entries: list[list[Any]] = []
        self._tool_ids: set[str] = set()
        self.usage = TokenUsage()

    def feed(self, event: StreamEvent) -> None:
        last = self._entries[-1] if self._entries else None
        if event.type == TEXT_DELTA:
            if last is not None and last[0] == "text":
                last[1] += event.text
            else:
                self._entries.append(["text", event.text])
        elif event.type == REASONING_DELTA:
            if last is not None and last[0] == "reasoning":
                last[1] += event.text
                if event.signature:
                    last[2] = event.signature
            else:
                self._entries.append(["reasoning", event.text, event.signature])
        elif event.type == TOOL_CALL_DELTA:
            call_id = event.tool_call_id or ""
            if call_id not in self._tool_ids:
                self._tool_ids.add(call_id)
                self._entries.append(["tool", call_id])
        elif event.type == USAGE and event.usage is not None:
            self.usage += event.usage

    def blocks(
        self, accumulator: ToolCallAccumulator, partial: bool = False
    ) -> tuple[list[ContentBlock], list[ToolCall], int]:
        """
        Materialize content blocks and the tool calls they reference.

        With ``partial`` only closed blocks are kept: the trailing open text
        or reasoning block and tool calls that never completed are dropped.
        Returns ``(blocks, calls, dropped_count)``.
        """
        entries = list(self._entries)
        dropped = 0
        if partial and entries and entries[-1][0] != "tool":
            entries.pop()
            dropped += 1

        completed = {c.id for c in accumulator.completed}
        blocks: list[ContentBlock] = []
        calls: list[ToolCall] = []
        for entry in entries:
            if entry[0] == "text":
                if entry[1]:
                    blocks.append(TextBlock(entry[1]))
            elif entry[0] == "reasoning":
                if entry[1] or entry[2]:
                    blocks.append(ReasoningBlock(entry[1], signature=entry[2]))
            else:
                call = accumulator.get(entry[1])
                if call is None:
                    continue
                if partial and call.id not in completed:
                    dropped += 1
                    continue
                blocks.append(call.to_block())
                calls.append(call)
        return blocks, calls, dropped


class AgentLoop:
    """
    Runs conversations against one provider adapter, one session, one tool set.

    Only one :meth:`run` may be active at a time, on this loop or on any
    other loop sharing the session; a concurrent call raises
    :class:`LoopBusyError`.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        session: Session | None = None,
        tools: dict[str, Tool] | ToolRegistrar | None = None,
        config: AgentConfig | None = None,
        events: EventBus | None = None,
        steering: SteeringQueue | None = None,
        compactor: Compactor | None = None,
        summarizer: Summarizer | None = None,
        models: ModelRegistry | None = None,
    ) -> None:
        self.adapter = adapter
        self.models = models
        self.session = session if session is not None else Session()
        self._tools_source: dict[str, Tool] | ToolRegistrar = tools if tools is not None else {}
        self.config = config or AgentConfig()
        self.events = events or EventBus()
        self.steering = steering or SteeringQueue()
        self.compactor = compactor or Compactor(self._compaction_policy())
        self.summarizer = summarizer or self._summarize
        self.dispatcher = ToolDispatcher(
            self._tools_source, self.config.dispatcher, on_update=self._on_tool_update
        )

        self._state = IDLE
        self._busy = False
        self._turn = 0
        self._run_messages: list[Message] = []
        self._run_usage = TokenUsage()
        self._update_tasks: set[asyncio.Task[Any]] = set()
        self._turn_token: CancellationToken | None = None

    def _compaction_policy(self) -> CompactionPolicy:
        """The configured policy, sized to the model's context window when it is known."""
        policy = self.config.compaction
        if policy.context_window is not None or self.models is None:
            return policy
        definition = self.models.get(self.adapter.model)
        if definition is None:
            return policy
        return replace(policy, context_window=definition.context_window)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._busy

    @property
    def tools(self) -> dict[str, Tool]:
        if isinstance(self._tools_source, dict):
            return self._tools_source
        return self._tools_source.tools()

    # ------------------------------------------------------------------
    # Steering / follow-up / abort
    # ------------------------------------------------------------------

    def steer(self, message: str) -> None:
        """Interrupt the current turn and redirect the model with ``message``."""
        self.steering.steer(message)

    def follow_up(self, message: str) -> None:
        """Queue ``message`` for when the loop would otherwise finish."""
        self.steering.follow_up(message)

    def abort(self) -> None:
        """Cancel the current turn and end the run with ``stop_reason="aborted"``."""
        self.steering.abort()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, user_input: str, raise_on_error: bool = False) -> LoopResult:
        """
        Append ``user_input`` and run turns until the loop is terminal.

        Provider failures end the run with ``stop_reason="error"`` and the
        error payload on the result (and on the ``agent_end`` event). With
        ``raise_on_error`` they are raised as :class:`ProviderError` instead.

        Raises:
            LoopBusyError: If a run is already in progress on this loop or
                another loop owns the session.
        """
        if self._busy:
            raise LoopBusyError("AgentLoop.run() is already in progress")
        self.session.claim(self)
        self._busy = True
        try:
            result = await self._run(user_input)
        finally:
            self._busy = False
            self.session.release(self)

        if raise_on_error and result.error is not None:
            raise ProviderError(
                result.error.get("message", "provider error"),
                kind=result.error.get("kind", "unknown"),
                retryable=result.error.get("retryable"),
                status_code=result.error.get("status_code"),
            )
        return result

    async def stream(self, user_input: str) -> AsyncIterator[AgentEvent]:
        """
        Run like :meth:`run`, yielding every published event as it happens.

        Yields :class:`AgentEvent` wrappers; canonical stream events arrive
        as ``stream_event`` entries whose data is a
        :class:`StreamEventEnvelope`. Closing the iterator early aborts the
        run.
        """
        queue: asyncio.Queue[AgentEvent | None] = asyncio.Queue()
        unsubscribe = self.events.on("*", queue.put_nowait, priority=1000, source="stream")
        task = asyncio.create_task(self.run(user_input))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (item := await queue.get()) is not None:
                yield item
            await task
        finally:
            unsubscribe()
            if not task.done():
                self.abort()
                await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self, user_input: str) -> LoopResult:
        self.steering.reset_abort()
        self._set_state(IDLE)
        self._turn = 0
        self._run_messages = []
        self._run_usage = TokenUsage()

        stop_reason = "error"
        error: dict[str, Any] | None = None
        last_message: Message | None = None

        await self.events.emit(
            AGENT_START,
            AgentStartEvent(
                user_input=user_input,
                session_id=self.session.id,
                model=self.adapter.model,
            ),
        )

        try:
            await self._append(Message.user(user_input))
            # Steering queued while idle is just more user input
            for text in self.steering.drain_steering():
                await self._append(Message.user(text))

            while True:
                if self.steering.abort_requested:
                    stop_reason = "aborted"
                    break
                if self._turn >= self.config.max_turns:
                    logger.info("Max turns reached (%d)", self.config.max_turns)
                    stop_reason = "max_turns"
                    break

                self._turn += 1
                outcome = await self._run_turn(self._turn)
                if outcome.message is not None and outcome.message.role == "assistant":
                    last_message = outcome.message

                if outcome.error is not None:
                    stop_reason, error = "error", outcome.error
                    break
                if self.steering.abort_requested:
                    stop_reason = "aborted"
                    break
                if await self._apply_steering(outcome.discarded_blocks):
                    continue
                if outcome.stop_reason == "aborted":
                    stop_reason = "aborted"
                    break
                if outcome.stop_reason == "tool_calls":
                    continue

                follow = self.steering.pop_follow_up()
                if follow is not None:
                    await self.events.emit(FOLLOW_UP, FollowUpEvent(turn=self._turn, message=follow))
                    await self._append(Message.user(follow))
                    continue

                stop_reason = outcome.stop_reason
                break
        except asyncio.CancelledError:
            stop_reason = "aborted"
            raise
        except Exception as e:
            stop_reason = "error"
            error = {"kind": "exception", "message": f"{type(e).__name__}: {e}"}
            logger.error("Agent loop failed: %s", e, exc_info=True)
            raise
        finally:
            self._set_state(TERMINAL)
            self.session.flush()
            await self.events.emit(
                AGENT_END,
                AgentEndEvent(
                    session_id=self.session.id,
                    total_turns=self._turn,
                    stop_reason=stop_reason,
                    error=error,
                ),
            )

        return LoopResult(
            stop_reason=stop_reason,
            message=last_message,
            turns=self._turn,
            usage=self._run_usage,
            error=error,
            messages=list(self._run_messages),
        )

    async def _apply_steering(self, discarded_blocks: int) -> bool:
        """Append queued steering messages. Returns True if there were any."""
        messages = self.steering.drain_steering()
        for i, text in enumerate(messages):
            await self.events.emit(
                STEERING,
                SteeringEvent(
                    turn=self._turn,
                    message=text,
                    discarded_blocks=discarded_blocks if i == 0 else 0,
                ),
            )
            await self._append(Message.user(text))
        return bool(messages)

    async def _run_turn(self, turn: int) -> _TurnOutcome:
        self.dispatcher.reset()
        token = self.steering.new_token()
        self._turn_token = token
        try:
            self._set_state(AWAITING_MODEL)
            try:
                await self._maybe_compact()
            except AgentAbortedError as e:
                logger.info("Turn %d interrupted during compaction: %s", turn, e)
                return _TurnOutcome(stop_reason="aborted")

            context = self.session.context_messages()
            request = TurnRequest(
                messages=context,
                system_prompt=self.config.system_prompt or None,
                tools=[t.definition() for t in self.tools.values()],
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                thinking_level=self.config.thinking_level,
            )
            await self.events.emit(
                TURN_START, TurnStartEvent(turn=turn, message_count=len(context))
            )

            outcome = await self._stream_turn(turn, request, token)

            await self.events.emit(
                TURN_END,
                TurnEndEvent(
                    turn=turn,
                    stop_reason="error" if outcome.error else outcome.stop_reason,
                    tool_call_count=outcome.tool_call_count,
                    message_id=outcome.message.id if outcome.message else None,
                ),
            )
            return outcome
        finally:
            self._turn_token = None
            self.steering.release_token()

    async def _stream_turn(
        self, turn: int, request: TurnRequest, token: CancellationToken
    ) -> _TurnOutcome:
        builder = _ResponseBuilder()
        accumulator = ToolCallAccumulator(self.tools)
        stop_reason: str | None = None
        error: dict[str, Any] | None = None

        async for event in self.adapter.open_turn(request, token):
            if self._state == AWAITING_MODEL:
                self._set_state(STREAMING_RESPONSE)
            await self.events.emit(STREAM_EVENT, StreamEventEnvelope(turn=turn, event=event))
            if event.type == STOP:
                stop_reason = event.stop_reason or "end_turn"
            elif event.type == ERROR:
                error = dict(event.error or {})
            else:
                builder.feed(event)
                accumulator.feed(event)

        self._run_usage += builder.usage

        if error is not None:
            # Closed text and reasoning only; tool calls from a failed response never run
            blocks, _, _ = builder.blocks(accumulator, partial=True)
            text_only = [b for b in blocks if isinstance(b, (TextBlock, ReasoningBlock))]
            message = await self._append_assistant(text_only, "error", builder.usage)
            return _TurnOutcome(stop_reason="error", message=message, error=error)

        if stop_reason == "aborted":
            return await self._finish_interrupted(builder, accumulator, token)

        for call in accumulator.incomplete:
            accumulator.complete(call.id)
        blocks, calls, _ = builder.blocks(accumulator)
        message = await self._append_assistant(blocks, stop_reason or "end_turn", builder.usage)
        if not calls:
            return _TurnOutcome(stop_reason=stop_reason or "end_turn", message=message)

        interrupted = await self._dispatch(turn, calls, token)
        return _TurnOutcome(
            stop_reason="aborted" if interrupted else "tool_calls",
            message=message,
            tool_call_count=len(calls),
        )

    async def _finish_interrupted(
        self,
        builder: _ResponseBuilder,
        accumulator: ToolCallAccumulator,
        token: CancellationToken,
    ) -> _TurnOutcome:
        """Keep the closed part of an interrupted response and close out its tool calls."""
        blocks, calls, dropped = builder.blocks(accumulator, partial=True)
        message = await self._append_assistant(blocks, "aborted", builder.usage)
        if message is not None:
            reason = token.reason or "abort"
            for call in calls:
                if call.state == "validated":
                    call.fail({"kind": "killed", "message": f"Not executed: turn interrupted ({reason})"})
                await self._append(Message(role="tool", content=(call.to_result_block(),)))
        logger.info("Turn %d interrupted (%s); %d block(s) discarded", self._turn, token.reason, dropped)
        return _TurnOutcome(
            stop_reason="aborted",
            message=message,
            tool_call_count=len(calls),
            discarded_blocks=dropped,
        )

    async def _dispatch(
        self, turn: int, calls: list[ToolCall], token: CancellationToken
    ) -> bool:
        """
        Execute ``calls`` and append one tool message per call, in emission order.

        Returns True if the turn was interrupted; results not yet appended at
        that point are discarded and replaced with ``killed`` results.
        """
        self._set_state(DISPATCHING_TOOLS)
        for call in calls:
            if call.state == "validated":
                await self._before_tool_call(turn, call)

        appended: set[str] = set()
        interrupted = False
        dispatch = self.dispatcher.dispatch_ordered(calls, token)
        try:
            async for call in dispatch:
                if token.cancelled:
                    interrupted = True
                    break
                result = await self._after_tool_result(turn, call)
                await self._append(Message(role="tool", content=(result,)))
                appended.add(call.id)
        finally:
            await dispatch.aclose()

        if token.cancelled:
            interrupted = True
            reason = token.reason or "abort"
            for call in calls:
                if call.id not in appended:
                    await self._append(
                        Message(role="tool", content=(_discarded_result(call, reason),))
                    )
        return interrupted

    async def _before_tool_call(self, turn: int, call: ToolCall) -> None:
        results = await self.events.emit(
            BEFORE_TOOL_CALL,
            BeforeToolCallEvent(
                tool_call_id=call.id,
                tool_name=call.name,
                args=dict(call.parsed_arguments or {}),
                turn=turn,
            ),
        )
        for r in results:
            if not isinstance(r, ToolCallEventResult):
                continue
            if r.block:
                call.fail({"kind": "exception", "message": f"Blocked: {r.reason or 'blocked by handler'}"})
                return
            if r.modified_args is not None:
                call.parsed_arguments = dict(r.modified_args)

    async def _after_tool_result(self, turn: int, call: ToolCall) -> ToolResultBlock:
        block = call.to_result_block()
        results = await self.events.emit(
            AFTER_TOOL_RESULT,
            AfterToolResultEvent(
                tool_call_id=call.id,
                tool_name=call.name,
                args=dict(call.parsed_arguments or {}),
                result=block.content,
                is_error=block.is_error,
                turn=turn,
            ),
        )
        for r in results:
            if isinstance(r, ToolResultEventResult) and r.modified_result is not None:
                block = ToolResultBlock(
                    tool_call_id=block.tool_call_id,
                    name=block.name,
                    content=r.modified_result,
                    is_error=block.is_error,
                    error=block.error,
                )
        return block

    def _on_tool_update(self, call: ToolCall, output: str) -> None:
        if not self.events.has_handlers(TOOL_EXECUTION_UPDATE):
            return
        # Fire-and-forget: the dispatcher calls this synchronously
        task = asyncio.get_running_loop().create_task(
            self.events.emit(
                TOOL_EXECUTION_UPDATE,
                ToolExecutionUpdateEvent(
                    tool_call_id=call.id, tool_name=call.name, output=output, turn=self._turn
                ),
            )
        )
        self._update_tasks.add(task)
        task.add_done_callback(self._update_tasks.discard)

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    async def _append(self, message: Message) -> Message:
        stored = self.session.append(message)
        self._run_messages.append(stored)
        await self.events.emit(MESSAGE_APPENDED, MessageAppendedEvent(message=stored))
        return stored

    async def _append_assistant(
        self, blocks: list[ContentBlock], stop_reason: str, usage: TokenUsage
    ) -> Message | None:
        """Append the assistant message, or just record usage when it is empty."""
        if not blocks and stop_reason in ("aborted", "error"):
            self.session.add_usage(usage)
            return None
        return await self._append(
            Message(
                role="assistant",
                content=tuple(blocks),
                stop_reason=stop_reason,
                usage=usage,
            )
        )

    def _set_state(self, state: str) -> None:
        if state != self._state:
            logger.debug("Loop state: %s -> %s", self._state, state)
            self._state = state

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def _maybe_compact(self) -> None:
        record = await self.compactor.maybe_compact(self.session, self.summarizer)
        if record is not None:
            await self.events.emit(
                COMPACTION, CompactionEvent(record=record, truncated=record.truncated)
            )

    async def _summarize(self, messages: list[Message]) -> str:
        """
        Ask the model for a summary of ``messages``.

        Runs under the current turn's token, so steering or abort cancels it
        with :class:`AgentAbortedError`.
        """
        token = self._turn_token or CancellationToken()
        request = TurnRequest(
            messages=[Message.user(render_transcript(messages))],
            system_prompt=SUMMARY_SYSTEM_PROMPT,
            max_tokens=self.compactor.policy.reserve_tokens,
        )
        parts: list[str] = []
        usage = TokenUsage()
        aborted = False
        async for event in self.adapter.open_turn(request, token):
            if event.type == TEXT_DELTA:
                parts.append(event.text)
            elif event.type == USAGE and event.usage is not None:
                usage += event.usage
            elif event.type == STOP and event.stop_reason == "aborted":
                aborted = True
            elif event.type == ERROR:
                raise CompactionError((event.error or {}).get("message", "summarization failed"))
        self.session.add_usage(usage)
        self._run_usage += usage
        if aborted or token.cancelled:
            raise AgentAbortedError(f"Summarization cancelled ({token.reason or 'abort'})")
        summary = "".join(parts).strip()
        if not summary:
            raise CompactionError("Summarizer returned no text")
        return summary


def _discarded_result(call: ToolCall, reason: str) -> ToolResultBlock:
    """Result shown for a call whose outcome was discarded by an interruption."""
    error = {"kind": "killed", "message": f"Turn interrupted ({reason}); result discarded"}
    return ToolResultBlock(
        tool_call_id=call.id,
        name=call.name,
        content=json.dumps({"error": error}),
        is_error=True,
        error=error,
    )


def render_transcript(messages: list[Message]) -> str:
    """Plain-text transcript used as summarization input."""
    lines = ["Summarize the following conversation:", ""]
    for msg in messages:
        if msg.role == "tool":
            for result in msg.tool_results:
                status = "error" if result.is_error else "ok"
                lines.append(
                    f"[tool result {result.name} ({status})]: "
                    f"{result.content[:_TRANSCRIPT_ITEM_CHARS]}"
                )
            continue
        if msg.text:
            lines.append(f"{msg.role}: {msg.text[:_TRANSCRIPT_ITEM_CHARS]}")
        for tc in msg.tool_calls:
            args = json.dumps(tc.arguments)[:_TRANSCRIPT_ITEM_CHARS]
            lines.append(f"[tool call {tc.name}]: {args}")
    return "\n".join(lines)
