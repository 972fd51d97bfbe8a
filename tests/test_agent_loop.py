"""Tests for the agent loop controller."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from turnkit.adapters.scripted import ScriptedAdapter
from turnkit.agent import DISPATCHING_TOOLS, TERMINAL, AgentLoop, render_transcript
from turnkit.compaction import SUMMARY_PREFIX, CompactionPolicy
from turnkit.config import AgentConfig
from turnkit.errors import LoopBusyError, ProviderError
from turnkit.events import (
    AFTER_TOOL_RESULT,
    AGENT_END,
    AGENT_START,
    BEFORE_TOOL_CALL,
    COMPACTION,
    FOLLOW_UP,
    STEERING,
    STREAM_EVENT,
    TEXT_DELTA,
    TURN_END,
    TURN_START,
    EventBus,
    StreamEvent,
    ToolCallEventResult,
    ToolResultEventResult,
)
from turnkit.model_registry import ModelDefinition, ModelRegistry, TokenUsage
from turnkit.models import Message, TextBlock, ToolCallBlock
from turnkit.session import Session, SessionManager
from turnkit.tools import ToolRegistry, tool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tool_turn(call_id: str, name: str, args: dict, chunks: int = 2) -> list[StreamEvent]:
    """Events for a response that makes one tool call, arguments split into fragments."""
    raw = json.dumps(args)
    step = max(1, len(raw) // chunks)
    fragments = [raw[i : i + step] for i in range(0, len(raw), step)]
    events = [StreamEvent.tool_call_delta(call_id, name, "")]
    events += [StreamEvent.tool_call_delta(call_id, name, f) for f in fragments]
    events += [StreamEvent.tool_call_complete(call_id, name), StreamEvent.stop("tool_calls")]
    return events


def _roles(messages: list[Message]) -> list[str]:
    return [m.role for m in messages]


# ---------------------------------------------------------------------------
# Single turn
# ---------------------------------------------------------------------------


class TestSingleTurn:
    @pytest.mark.asyncio
    async def test_text_reply(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.text_delta("4"),
            StreamEvent.usage_event(TokenUsage(input_tokens=10, output_tokens=1)),
            StreamEvent.stop("end_turn"),
        )
        loop = AgentLoop(adapter, config=config)

        result = await loop.run("What is 2+2?")

        assert result.ok
        assert result.text == "4"
        assert result.stop_reason == "end_turn"
        assert result.turns == 1
        branch = loop.session.active_branch()
        assert _roles(branch) == ["user", "assistant"]
        assert branch[0].text == "What is 2+2?"
        assert branch[1].stop_reason == "end_turn"
        assert loop.session.usage.input_tokens == 10
        assert result.usage.output_tokens == 1
        assert loop.state == TERMINAL

    @pytest.mark.asyncio
    async def test_request_carries_context_and_tools(
        self, config: AgentConfig, echo_registry: ToolRegistry
    ) -> None:
        config.system_prompt = "Be brief."
        adapter = ScriptedAdapter()
        adapter.add_text_turn("hi")
        loop = AgentLoop(adapter, tools=echo_registry, config=config)

        await loop.run("hello")

        request = adapter.requests[0]
        assert request.system_prompt == "Be brief."
        assert [t["name"] for t in request.tools] == ["echo"]
        assert request.model is None
        assert [m.text for m in request.messages] == ["hello"]

    @pytest.mark.asyncio
    async def test_reasoning_and_text_blocks_in_emission_order(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.reasoning_delta("Think"),
            StreamEvent.reasoning_delta("ing", signature="sig"),
            StreamEvent.text_delta("Ans"),
            StreamEvent.text_delta("wer"),
            StreamEvent.stop("end_turn"),
        )
        loop = AgentLoop(adapter, config=config)

        result = await loop.run("q")

        assert result.message is not None
        reasoning, text = result.message.content
        assert reasoning.text == "Thinking"
        assert reasoning.signature == "sig"
        assert text == TextBlock("Answer")

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, config: AgentConfig, bus: EventBus) -> None:
        adapter = ScriptedAdapter()
        adapter.add_text_turn("ok")
        seen: list[str] = []
        bus.on("*", lambda e: seen.append(e.type))
        loop = AgentLoop(adapter, config=config, events=bus)

        await loop.run("hi")

        assert seen[0] == AGENT_START
        assert seen[-1] == AGENT_END
        assert seen.index(TURN_START) < seen.index(STREAM_EVENT) < seen.index(TURN_END)


# ---------------------------------------------------------------------------
# Tool turns
# ---------------------------------------------------------------------------


class TestToolTurns:
    @pytest.mark.asyncio
    async def test_read_tool_round_trip(
        self, config: AgentConfig, builtin_tools: ToolRegistry
    ) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(*_tool_turn("call_1", "read", {"path": "notes.txt"}))
        adapter.add_text_turn("The file says hello.")
        loop = AgentLoop(adapter, tools=builtin_tools, config=config)

        result = await loop.run("What is in notes.txt?")

        assert result.text == "The file says hello."
        assert result.turns == 2
        branch = loop.session.active_branch()
        assert _roles(branch) == ["user", "assistant", "tool", "assistant"]

        call = branch[1].tool_calls[0]
        assert call == ToolCallBlock(
            id="call_1",
            name="read",
            arguments={"path": "notes.txt"},
            raw_arguments=json.dumps({"path": "notes.txt"}),
        )
        tool_result = branch[2].tool_results[0]
        assert tool_result.tool_call_id == "call_1"
        assert not tool_result.is_error
        assert "hello from notes" in tool_result.content

        second_request = adapter.requests[1]
        assert second_request.messages[-1].role == "tool"

    @pytest.mark.asyncio
    async def test_results_follow_emission_order(self, config: AgentConfig) -> None:
        @tool
        async def wait(delay: float, label: str) -> str:
            await asyncio.sleep(delay)
            return label

        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.tool_call_delta("a", "wait", '{"delay": 0.05, "label": "A"}'),
            StreamEvent.tool_call_delta("b", "wait", '{"delay": 0.0, "label": "B"}'),
            StreamEvent.tool_call_delta("c", "wait", '{"delay": 0.02, "label": "C"}'),
            StreamEvent.tool_call_complete("a", "wait"),
            StreamEvent.tool_call_complete("b", "wait"),
            StreamEvent.tool_call_complete("c", "wait"),
            StreamEvent.stop("tool_calls"),
        )
        adapter.add_text_turn("done")
        loop = AgentLoop(adapter, tools={"wait": wait}, config=config)

        await loop.run("go")

        tool_messages = [m for m in loop.session.active_branch() if m.role == "tool"]
        assert [m.tool_results[0].content for m in tool_messages] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_invalid_arguments_reported_to_model(
        self, config: AgentConfig, builtin_tools: ToolRegistry
    ) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.tool_call_delta("c1", "read", '{"path": '),
            StreamEvent.tool_call_complete("c1", "read"),
            StreamEvent.stop("tool_calls"),
        )
        adapter.add_text_turn("sorry")
        loop = AgentLoop(adapter, tools=builtin_tools, config=config)

        result = await loop.run("read something")

        assert result.text == "sorry"
        tool_result = loop.session.active_branch()[2].tool_results[0]
        assert tool_result.is_error
        assert tool_result.error["kind"] == "validation"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(*_tool_turn("c1", "missing", {}))
        adapter.add_text_turn("ok")
        loop = AgentLoop(adapter, config=config)

        await loop.run("x")

        tool_result = loop.session.active_branch()[2].tool_results[0]
        assert tool_result.is_error
        assert "Unknown tool" in tool_result.error["message"]

    @pytest.mark.asyncio
    async def test_before_tool_call_can_block(
        self, config: AgentConfig, echo_registry: ToolRegistry, bus: EventBus
    ) -> None:
        bus.on(BEFORE_TOOL_CALL, lambda e: ToolCallEventResult(block=True, reason="not allowed"))
        adapter = ScriptedAdapter()
        adapter.add_turn(*_tool_turn("c1", "echo", {"text": "hi"}))
        adapter.add_text_turn("ok")
        loop = AgentLoop(adapter, tools=echo_registry, config=config, events=bus)

        await loop.run("x")

        tool_result = loop.session.active_branch()[2].tool_results[0]
        assert tool_result.is_error
        assert tool_result.error["message"] == "Blocked: not allowed"

    @pytest.mark.asyncio
    async def test_before_tool_call_can_modify_args(
        self, config: AgentConfig, echo_registry: ToolRegistry, bus: EventBus
    ) -> None:
        bus.on(BEFORE_TOOL_CALL, lambda e: ToolCallEventResult(modified_args={"text": "changed"}))
        adapter = ScriptedAdapter()
        adapter.add_turn(*_tool_turn("c1", "echo", {"text": "hi"}))
        adapter.add_text_turn("ok")
        loop = AgentLoop(adapter, tools=echo_registry, config=config, events=bus)

        await loop.run("x")

        assert loop.session.active_branch()[2].tool_results[0].content == "changed"

    @pytest.mark.asyncio
    async def test_after_tool_result_can_rewrite(
        self, config: AgentConfig, echo_registry: ToolRegistry, bus: EventBus
    ) -> None:
        bus.on(AFTER_TOOL_RESULT, lambda e: ToolResultEventResult(modified_result="[redacted]"))
        adapter = ScriptedAdapter()
        adapter.add_turn(*_tool_turn("c1", "echo", {"text": "secret"}))
        adapter.add_text_turn("ok")
        loop = AgentLoop(adapter, tools=echo_registry, config=config, events=bus)

        await loop.run("x")

        assert loop.session.active_branch()[2].tool_results[0].content == "[redacted]"

    @pytest.mark.asyncio
    async def test_max_turns(self, echo_registry: ToolRegistry) -> None:
        adapter = ScriptedAdapter()
        for i in range(3):
            adapter.add_turn(*_tool_turn(f"c{i}", "echo", {"text": str(i)}))
        loop = AgentLoop(adapter, tools=echo_registry, config=AgentConfig(max_turns=2))

        result = await loop.run("loop forever")

        assert result.stop_reason == "max_turns"
        assert result.turns == 2
        assert adapter.attempts == 2


# ---------------------------------------------------------------------------
# Steering, follow-up, abort
# ---------------------------------------------------------------------------


class TestSteering:
    @pytest.mark.asyncio
    async def test_steer_mid_stream_keeps_closed_blocks(
        self, config: AgentConfig, builtin_tools: ToolRegistry, bus: EventBus
    ) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.text_delta("Let me look."),
            StreamEvent.tool_call_delta("c1", "read", '{"path": "notes.txt"}'),
            StreamEvent.tool_call_complete("c1", "read"),
            StreamEvent.text_delta("Now I will"),
            StreamEvent.text_delta(" keep going"),
            StreamEvent.stop("tool_calls"),
        )
        adapter.add_text_turn("Switching to the parser.")
        loop = AgentLoop(adapter, tools=builtin_tools, config=config, events=bus)

        def on_stream(envelope):
            if envelope.event.type == TEXT_DELTA and envelope.event.text == "Now I will":
                loop.steer("Only look at the parser")

        bus.on(STREAM_EVENT, on_stream)
        steering_events = []
        bus.on(STEERING, steering_events.append)

        result = await loop.run("Refactor")

        assert result.text == "Switching to the parser."
        branch = loop.session.active_branch()
        assert _roles(branch) == ["user", "assistant", "tool", "user", "assistant"]

        interrupted = branch[1]
        assert interrupted.stop_reason == "aborted"
        assert interrupted.text == "Let me look."
        assert [c.id for c in interrupted.tool_calls] == ["c1"]

        killed = branch[2].tool_results[0]
        assert killed.is_error
        assert killed.error["kind"] == "killed"

        assert branch[3].text == "Only look at the parser"
        assert steering_events[0].discarded_blocks == 1

    @pytest.mark.asyncio
    async def test_steer_with_nothing_streamed(self, config: AgentConfig, bus: EventBus) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.text_delta("partial"),
            StreamEvent.text_delta(" answer"),
            StreamEvent.stop("end_turn"),
        )
        adapter.add_text_turn("new answer")
        loop = AgentLoop(adapter, config=config, events=bus)
        steered = []

        def on_stream(envelope):
            if not steered:
                steered.append(envelope.event)
                loop.steer("change of plan")

        bus.on(STREAM_EVENT, on_stream)

        result = await loop.run("start")

        assert result.text == "new answer"
        assert _roles(loop.session.active_branch()) == ["user", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_steer_during_tool_dispatch(self, config: AgentConfig) -> None:
        @tool
        async def slow(cancel) -> str:
            await asyncio.wait_for(cancel.wait(), timeout=5)
            return "stopped early"

        adapter = ScriptedAdapter()
        adapter.add_turn(*_tool_turn("c1", "slow", {}))
        adapter.add_text_turn("redirected")
        loop = AgentLoop(adapter, tools={"slow": slow}, config=config)

        task = asyncio.create_task(loop.run("go"))
        for _ in range(200):
            if loop.state == DISPATCHING_TOOLS:
                break
            await asyncio.sleep(0.01)
        loop.steer("stop that")
        result = await asyncio.wait_for(task, timeout=10)

        assert result.text == "redirected"
        branch = loop.session.active_branch()
        assert _roles(branch) == ["user", "assistant", "tool", "user", "assistant"]
        assert branch[2].tool_results[0].error["kind"] == "killed"
        assert branch[3].text == "stop that"

    @pytest.mark.asyncio
    async def test_follow_up_extends_run(self, config: AgentConfig, bus: EventBus) -> None:
        adapter = ScriptedAdapter()
        adapter.add_text_turn("4")
        adapter.add_text_turn("6")
        follow_ups = []
        bus.on(FOLLOW_UP, follow_ups.append)
        loop = AgentLoop(adapter, config=config, events=bus)
        loop.follow_up("And 3+3?")

        result = await loop.run("2+2?")

        assert result.text == "6"
        assert result.turns == 2
        assert [f.message for f in follow_ups] == ["And 3+3?"]
        assert [m.text for m in loop.session.active_branch()] == ["2+2?", "4", "And 3+3?", "6"]

    @pytest.mark.asyncio
    async def test_abort_mid_stream(self, config: AgentConfig, bus: EventBus) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.text_delta("one"),
            StreamEvent.tool_call_delta("c1", "echo", '{"te'),
            StreamEvent.text_delta("two"),
            StreamEvent.stop("end_turn"),
        )
        loop = AgentLoop(adapter, config=config, events=bus)
        bus.on(
            STREAM_EVENT,
            lambda env: loop.abort() if env.event.text == "two" else None,
        )

        result = await loop.run("start")

        assert result.stop_reason == "aborted"
        assert result.ok
        message = loop.session.active_branch()[-1]
        # The closed text block survives; the unfinished tool call does not
        assert message.text == "one"
        assert message.tool_calls == []

    @pytest.mark.asyncio
    async def test_stream_close_aborts_run(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter(delay=0.01)
        adapter.add_turn(*[StreamEvent.text_delta("x") for _ in range(50)], StreamEvent.stop("end_turn"))
        loop = AgentLoop(adapter, config=config)

        stream = loop.stream("go")
        async for event in stream:
            if event.type == STREAM_EVENT:
                break
        await stream.aclose()

        assert not loop.is_running
        assert loop.state == TERMINAL


# ---------------------------------------------------------------------------
# Errors and busy state
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_rate_limited_twice_then_success(self, config: AgentConfig) -> None:
        sleep = AsyncMock()
        adapter = ScriptedAdapter(
            [
                ProviderError("slow down", kind="rate_limit", status_code=429),
                ProviderError("slow down", kind="rate_limit", status_code=429),
                [StreamEvent.text_delta("4"), StreamEvent.stop("end_turn")],
            ],
            sleep=sleep,
        )
        loop = AgentLoop(adapter, config=config)

        result = await loop.run("2+2?")

        assert result.ok
        assert result.text == "4"
        assert adapter.attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_fatal_error_ends_run(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter([ProviderError("bad input", kind="bad_request", status_code=400)])
        loop = AgentLoop(adapter, config=config)

        result = await loop.run("x")

        assert result.stop_reason == "error"
        assert not result.ok
        assert result.error["kind"] == "bad_request"
        assert adapter.attempts == 1

    @pytest.mark.asyncio
    async def test_raise_on_error(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter([ProviderError("no key", kind="auth", status_code=401)])
        loop = AgentLoop(adapter, config=config)

        with pytest.raises(ProviderError) as exc_info:
            await loop.run("x", raise_on_error=True)
        assert exc_info.value.kind == "auth"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_error_event_mid_stream_keeps_closed_text(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter()
        adapter.add_turn(
            StreamEvent.text_delta("kept"),
            StreamEvent.tool_call_delta("c1", "echo", "{}"),
            StreamEvent.tool_call_complete("c1", "echo"),
            StreamEvent.error_event({"kind": "connection", "message": "reset", "retryable": True}),
        )
        loop = AgentLoop(adapter, config=config)

        result = await loop.run("x")

        assert result.stop_reason == "error"
        message = loop.session.active_branch()[-1]
        assert message.stop_reason == "error"
        assert message.text == "kept"
        assert message.tool_calls == []

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(self, config: AgentConfig) -> None:
        adapter = ScriptedAdapter(delay=0.05)
        adapter.add_text_turn("slow")
        loop = AgentLoop(adapter, config=config)

        task = asyncio.create_task(loop.run("first"))
        await asyncio.sleep(0.01)
        with pytest.raises(LoopBusyError):
            await loop.run("second")
        await task


# ---------------------------------------------------------------------------
# Compaction inside the loop
# ---------------------------------------------------------------------------


class TestLoopCompaction:
    @pytest.mark.asyncio
    async def test_compacts_before_request(self, bus: EventBus) -> None:
        session = Session()
        for i in range(8):
            role_message = (
                Message.user(f"question {i} " + "x" * 200)
                if i % 2 == 0
                else Message(role="assistant", content=(TextBlock(f"answer {i} " + "y" * 200),))
            )
            session.append(role_message)
        config = AgentConfig(
            compaction=CompactionPolicy(context_window=400, threshold=0.5, keep_recent=4)
        )
        adapter = ScriptedAdapter()
        adapter.add_text_turn("Earlier we discussed questions 0 to 3.")
        adapter.add_text_turn("final")
        compactions = []
        bus.on(COMPACTION, compactions.append)
        loop = AgentLoop(adapter, session=session, config=config, events=bus)

        result = await loop.run("next question")

        assert result.text == "final"
        assert len(compactions) == 1
        assert not compactions[0].truncated

        summary_request, turn_request = adapter.requests
        assert summary_request.tools == []
        assert "question 0" in summary_request.messages[0].text
        assert len(turn_request.messages) == 5
        assert turn_request.messages[0].text.startswith(SUMMARY_PREFIX)
        assert turn_request.messages[-1].text == "next question"

    @pytest.mark.asyncio
    async def test_failed_summary_truncates(self) -> None:
        session = Session()
        for i in range(6):
            session.append(Message.user(f"m{i} " + "z" * 300))
        config = AgentConfig(
            compaction=CompactionPolicy(context_window=300, threshold=0.5, keep_recent=2)
        )
        adapter = ScriptedAdapter(
            [ProviderError("nope", kind="bad_request"), [StreamEvent.text_delta("ok"), StreamEvent.stop("end_turn")]]
        )
        loop = AgentLoop(adapter, session=session, config=config)

        result = await loop.run("last")

        assert result.text == "ok"
        record = session.compactions[-1]
        assert record.truncated
        assert len(adapter.requests[-1].messages) == 2

    def test_window_comes_from_model_definition(self) -> None:
        models = ModelRegistry()
        models.register(ModelDefinition(id="scripted", provider="scripted", context_window=400))
        config = AgentConfig(compaction=CompactionPolicy(threshold=0.5))

        loop = AgentLoop(ScriptedAdapter(), config=config, models=models)

        assert loop.compactor.policy.context_window == 400
        assert loop.compactor.policy.trigger_tokens == 200
        assert config.compaction.context_window is None

    def test_configured_window_wins(self) -> None:
        models = ModelRegistry()
        models.register(ModelDefinition(id="scripted", provider="scripted", context_window=400))
        config = AgentConfig(compaction=CompactionPolicy(context_window=1000))

        loop = AgentLoop(ScriptedAdapter(), config=config, models=models)

        assert loop.compactor.policy.context_window == 1000

    @pytest.mark.asyncio
    async def test_model_window_triggers_compaction(self) -> None:
        session = Session()
        for i in range(6):
            session.append(Message.user(f"m{i} " + "z" * 300))
        models = ModelRegistry()
        models.register(ModelDefinition(id="scripted", provider="scripted", context_window=300))
        adapter = ScriptedAdapter()
        adapter.add_text_turn("summary of m0 to m3")
        adapter.add_text_turn("ok")
        config = AgentConfig(compaction=CompactionPolicy(threshold=0.5, keep_recent=2))
        loop = AgentLoop(adapter, session=session, config=config, models=models)

        await loop.run("last")

        assert len(session.compactions) == 1
        assert not session.compactions[0].truncated

    @pytest.mark.asyncio
    async def test_abort_cancels_summarization(self, bus: EventBus) -> None:
        session = Session()
        for i in range(6):
            session.append(Message.user(f"m{i} " + "z" * 300))
        config = AgentConfig(
            compaction=CompactionPolicy(context_window=300, threshold=0.5, keep_recent=2)
        )
        adapter = ScriptedAdapter(delay=0.5)
        adapter.add_text_turn("summary that never arrives")
        adapter.add_text_turn("unused")
        compactions = []
        bus.on(COMPACTION, compactions.append)
        loop = AgentLoop(adapter, session=session, config=config, events=bus)
        asyncio.get_running_loop().call_later(0.05, loop.abort)

        result = await asyncio.wait_for(loop.run("last"), timeout=5)

        assert result.stop_reason == "aborted"
        assert len(adapter.requests) == 1
        assert session.compactions == []
        assert compactions == []


# ---------------------------------------------------------------------------
# Persistence through the loop
# ---------------------------------------------------------------------------


class TestLoopPersistence:
    @pytest.mark.asyncio
    async def test_run_is_persisted(
        self, session_manager: SessionManager, builtin_tools: ToolRegistry, config: AgentConfig
    ) -> None:
        session = session_manager.create(cwd="/tmp")
        adapter = ScriptedAdapter()
        adapter.add_turn(*_tool_turn("c1", "read", {"path": "notes.txt"}))
        adapter.add_text_turn("done")
        loop = AgentLoop(adapter, session=session, tools=builtin_tools, config=config)

        async with session_manager.locked(session.id):
            await loop.run("read it")

        assert loop.session is session
        reloaded = session_manager.open(session.id)
        assert _roles(reloaded.active_branch()) == ["user", "assistant", "tool", "assistant"]
        assert reloaded.active_branch()[0].text == "read it"
        assert reloaded.active_branch()[-1].text == "done"
        assert reloaded.messages == session.messages
        assert reloaded.active_leaf_id == session.active_leaf_id

    @pytest.mark.asyncio
    async def test_empty_session_is_kept(self, config: AgentConfig) -> None:
        session = Session()
        adapter = ScriptedAdapter()
        adapter.add_text_turn("4")

        loop = AgentLoop(adapter, session=session, config=config)
        await loop.run("2+2?")

        assert loop.session is session
        assert len(session) == 2


# ---------------------------------------------------------------------------
# One owner per session
# ---------------------------------------------------------------------------


class TestSessionOwnership:
    @pytest.mark.asyncio
    async def test_second_loop_on_same_session_is_rejected(self, config: AgentConfig) -> None:
        session = Session()
        session.append(Message.user("seed"))
        slow = ScriptedAdapter(delay=0.05)
        slow.add_text_turn("A")
        other = ScriptedAdapter()
        other.add_text_turn("B")
        first = AgentLoop(slow, session=session, config=config)
        second = AgentLoop(other, session=session, config=config)

        results = await asyncio.gather(
            first.run("qa"), second.run("qb"), return_exceptions=True
        )

        assert results[0].stop_reason == "end_turn"
        assert isinstance(results[1], LoopBusyError)
        assert other.requests == []
        assert [m.text for m in session.active_branch()] == ["seed", "qa", "A"]
        assert session.owner is None

    @pytest.mark.asyncio
    async def test_session_is_free_after_run(self, config: AgentConfig) -> None:
        session = Session()
        first_adapter = ScriptedAdapter()
        first_adapter.add_text_turn("one")
        second_adapter = ScriptedAdapter()
        second_adapter.add_text_turn("two")

        await AgentLoop(first_adapter, session=session, config=config).run("a")
        result = await AgentLoop(second_adapter, session=session, config=config).run("b")

        assert result.text == "two"
        assert [m.text for m in session.active_branch()] == ["a", "one", "b", "two"]


# ---------------------------------------------------------------------------
# Transcript rendering
# ---------------------------------------------------------------------------


class TestRenderTranscript:
    def test_includes_roles_and_tools(self) -> None:
        messages = [
            Message.user("hello"),
            Message(
                role="assistant",
                content=(ToolCallBlock(id="c1", name="read", arguments={"path": "a"}),),
            ),
        ]

        transcript = render_transcript(messages)

        assert "user: hello" in transcript
        assert '[tool call read]: {"path": "a"}' in transcript

    def test_truncates_long_items(self) -> None:
        transcript = render_transcript([Message.user("q" * 10_000)])
        assert len(transcript) < 5000
