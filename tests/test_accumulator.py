"""Tests for ToolCallAccumulator: fragment joining, completion, and schema validation."""

from __future__ import annotations

import pytest

from turnkit.accumulator import ToolCallAccumulator
from turnkit.events import StreamEvent
from turnkit.tools import ToolRegistry, tool


@pytest.fixture
def tools():
    @tool(
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "limit": {"type": "integer", "minimum": 1},
            },
            "required": ["path"],
            "additionalProperties": False,
        }
    )
    async def read(path: str, limit: int = 100) -> str:
        """Read a file."""
        return path

    @tool
    async def bash(command: str) -> str:
        """Run a command."""
        return command

    return ToolRegistry([read, bash]).tools()


@pytest.fixture
def acc(tools) -> ToolCallAccumulator:
    return ToolCallAccumulator(tools)


class TestFragments:
    def test_interleaved_calls_are_joined_per_id(self, acc: ToolCallAccumulator) -> None:
        events = [
            StreamEvent.tool_call_delta("a", "read", ""),
            StreamEvent.tool_call_delta("a", "read", '{"pa'),
            StreamEvent.text_delta("ignored"),
            StreamEvent.tool_call_delta("b", "bash", '{"command"'),
            StreamEvent.tool_call_delta("a", None, 'th": "x.txt"}'),
            StreamEvent.tool_call_delta("b", None, ': "ls"}'),
            StreamEvent.tool_call_complete("b", "bash"),
            StreamEvent.tool_call_complete("a", "read"),
        ]
        for event in events:
            acc.feed(event)

        a, b = acc.calls
        assert (a.id, b.id) == ("a", "b")
        assert (a.index, b.index) == (0, 1)
        assert a.state == b.state == "validated"
        assert a.parsed_arguments == {"path": "x.txt"}
        assert b.parsed_arguments == {"command": "ls"}
        assert a.raw_arguments == '{"path": "x.txt"}'

    def test_incomplete_calls_are_tracked(self, acc: ToolCallAccumulator) -> None:
        acc.add_fragment("a", "read", '{"path": "x"}')
        acc.add_fragment("b", "bash", '{"comm')
        acc.complete("a")

        assert [c.id for c in acc.completed] == ["a"]
        assert [c.id for c in acc.incomplete] == ["b"]
        assert acc.get("b").state == "pending"

    def test_preview_is_best_effort(self, acc: ToolCallAccumulator) -> None:
        acc.add_fragment("a", "bash", '{"command": "ec')

        assert acc.preview("a") == {"command": "ec"}
        assert acc.preview("missing") == {}

    def test_preview_after_validation(self, acc: ToolCallAccumulator) -> None:
        acc.add_fragment("a", "bash", '{"command": "ls"}')
        acc.complete("a")

        assert acc.preview("a") == {"command": "ls"}

    def test_name_may_arrive_late(self, acc: ToolCallAccumulator) -> None:
        acc.add_fragment("a", None, '{"command": "ls"}')
        call = acc.complete("a", "bash")

        assert call.name == "bash"
        assert call.state == "validated"

    def test_complete_without_deltas(self, acc: ToolCallAccumulator) -> None:
        call = acc.complete("a", "bash")

        assert call.state == "failed"
        assert call.error["kind"] == "validation"
        assert "'command' is a required property" in call.error["message"]


class TestCompletion:
    def test_repeated_complete_returns_none(self, acc: ToolCallAccumulator) -> None:
        acc.add_fragment("a", "bash", '{"command": "ls"}')
        assert acc.complete("a") is not None
        assert acc.complete("a") is None
        assert len(acc.calls) == 1

    def test_duplicate_id_is_rejected(self, acc: ToolCallAccumulator) -> None:
        acc.add_fragment("a", "bash", '{"command": "ls"}')
        acc.complete("a")
        acc.add_fragment("a", "bash", '{"command": "pwd"}')
        duplicate = acc.complete("a")

        assert duplicate is not None
        assert duplicate.state == "failed"
        assert "Duplicate" in duplicate.error["message"]
        assert [c.id for c in acc.calls] == ["a"]
        assert acc.rejected == [duplicate]
        assert acc.get("a").parsed_arguments == {"command": "ls"}


class TestValidation:
    def _complete(self, acc: ToolCallAccumulator, name: str, raw: str):
        acc.add_fragment("c1", name, raw)
        return acc.complete("c1")

    def test_invalid_json(self, acc: ToolCallAccumulator) -> None:
        call = self._complete(acc, "read", '{"path": ')

        assert call.state == "failed"
        assert call.history == ["pending", "failed"]
        assert call.error["kind"] == "validation"
        assert "not valid JSON" in call.error["message"]

    def test_non_object_arguments(self, acc: ToolCallAccumulator) -> None:
        call = self._complete(acc, "read", '["x"]')

        assert call.state == "failed"
        assert call.error["message"] == "Arguments must be a JSON object"

    def test_unknown_tool(self, acc: ToolCallAccumulator) -> None:
        call = self._complete(acc, "write", '{"path": "x"}')

        assert call.state == "failed"
        assert call.error["message"] == "Unknown tool: 'write'"

    def test_schema_error_reports_path(self, acc: ToolCallAccumulator) -> None:
        call = self._complete(acc, "read", '{"path": "x", "limit": "ten"}')

        assert call.state == "failed"
        assert call.error["path"] == ["limit"]
        assert call.error["message"].startswith("limit: ")

    def test_missing_required_field(self, acc: ToolCallAccumulator) -> None:
        call = self._complete(acc, "read", '{"limit": 3}')

        assert call.state == "failed"
        assert "'path' is a required property" in call.error["message"]
        assert "path" not in call.error

    def test_multiple_errors_are_counted(self, acc: ToolCallAccumulator) -> None:
        call = self._complete(acc, "read", '{"limit": 0, "extra": true}')

        assert call.state == "failed"
        assert "more)" in call.error["message"]

    def test_empty_arguments_are_an_empty_object(self, acc: ToolCallAccumulator) -> None:
        call = self._complete(acc, "read", "")

        assert call.state == "failed"
        assert "required" in call.error["message"]
