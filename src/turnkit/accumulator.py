"""
Tool-call accumulator.

Tool-call arguments stream in as JSON text fragments, interleaved with
text and reasoning deltas and with other tool calls. The accumulator joins
fragments per call id, offers a best-effort partial parse for display, and
validates the full argument object against the tool's JSON schema only once
the call is complete.

Example:
    acc = ToolCallAccumulator(registry.tools())
    for event in events:
        acc.feed(event)
    for call in acc.calls:
        print(call.id, call.state)
"""

from __future__ import annotations

import json
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from turnkit.errors import ToolValidationError
from turnkit.events import TOOL_CALL_COMPLETE, TOOL_CALL_DELTA, StreamEvent
from turnkit.logging import get_logger
from turnkit.models import ToolCall
from turnkit.tools.base import Tool
from turnkit.utils.json_parse import parse_streaming_json

logger = get_logger("accumulator")


class ToolCallAccumulator:
    """Reassembles and validates the tool calls of one provider response."""

    def __init__(self, tools: dict[str, Tool] | None = None) -> None:
        self._tools = dict(tools or {})
        self._calls: list[ToolCall] = []
        self._open: dict[str, ToolCall] = {}
        self._seen: set[str] = set()
        self._rejected: list[ToolCall] = []
        self._validators: dict[str, Draft202012Validator] = {}

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def calls(self) -> list[ToolCall]:
        """Every call seen this response, in first-emission order."""
        return list(self._calls)

    @property
    def completed(self) -> list[ToolCall]:
        """Calls that received ``tool-call-complete`` (validated or failed)."""
        return [c for c in self._calls if self._open.get(c.id) is not c]

    @property
    def incomplete(self) -> list[ToolCall]:
        """Calls still waiting for ``tool-call-complete``."""
        return [c for c in self._calls if self._open.get(c.id) is c]

    @property
    def rejected(self) -> list[ToolCall]:
        """Calls that reused an id already seen this response."""
        return list(self._rejected)

    def get(self, call_id: str) -> ToolCall | None:
        for call in self._calls:
            if call.id == call_id:
                return call
        return None

    def preview(self, call_id: str) -> dict[str, Any]:
        """Best-effort parse of the arguments received so far. Never validates."""
        call = self._open.get(call_id) or self.get(call_id)
        if call is None:
            return {}
        if call.parsed_arguments is not None:
            return dict(call.parsed_arguments)
        return parse_streaming_json(call.raw_arguments)

    # ------------------------------------------------------------------
    # Feeding
    # ------------------------------------------------------------------

    def feed(self, event: StreamEvent) -> ToolCall | None:
        """Apply a canonical event. Non tool-call events are ignored."""
        if event.type == TOOL_CALL_DELTA:
            return self.add_fragment(
                event.tool_call_id or "", event.tool_name, event.args_delta or ""
            )
        if event.type == TOOL_CALL_COMPLETE:
            return self.complete(event.tool_call_id or "", event.tool_name)
        return None

    def add_fragment(self, call_id: str, name: str | None, fragment: str) -> ToolCall:
        call = self._open.get(call_id)
        if call is None:
            call = self._start(call_id, name)
        elif name and not call.name:
            call.name = name
        if fragment:
            call.raw_argument_fragments.append(fragment)
        return call

    def complete(self, call_id: str, name: str | None = None) -> ToolCall | None:
        """Close a call and validate it. Returns None for a repeated completion."""
        call = self._open.pop(call_id, None)
        if call is None:
            if call_id in self._seen:
                logger.warning("Ignoring repeated tool-call-complete for %s", call_id)
                return None
            call = self._start(call_id, name)
            self._open.pop(call_id, None)
        if name and not call.name:
            call.name = name

        if any(r is call for r in self._rejected):
            call.fail(
                ToolValidationError(f"Duplicate tool call id: {call_id!r}").to_payload()
            )
            return call

        try:
            arguments = self._validate(call)
        except ToolValidationError as e:
            logger.debug("Tool call %s (%s) failed validation: %s", call.id, call.name, e)
            call.fail(e.to_payload())
        else:
            call.mark_validated(arguments)
        return call

    def _start(self, call_id: str, name: str | None) -> ToolCall:
        call = ToolCall(id=call_id, name=name or "", index=len(self._calls))
        if not call_id or call_id in self._seen:
            logger.warning("Duplicate or empty tool call id: %r", call_id)
            self._rejected.append(call)
        else:
            self._calls.append(call)
            self._seen.add(call_id)
        self._open[call_id] = call
        return call

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, call: ToolCall) -> dict[str, Any]:
        tool = self._tools.get(call.name)
        if tool is None:
            raise ToolValidationError(f"Unknown tool: {call.name!r}")

        raw = call.raw_arguments.strip()
        if not raw:
            arguments: Any = {}
        else:
            try:
                arguments = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ToolValidationError(
                    f"Arguments are not valid JSON: {e.msg} (line {e.lineno}, column {e.colno})"
                ) from e
        if not isinstance(arguments, dict):
            raise ToolValidationError("Arguments must be a JSON object")

        validator = self._validator_for(tool)
        errors = sorted(
            validator.iter_errors(arguments),
            key=lambda err: [str(p) for p in err.absolute_path],
        )
        if errors:
            first = errors[0]
            path = list(first.absolute_path)
            where = "/".join(str(p) for p in path)
            message = f"{where}: {first.message}" if where else first.message
            if len(errors) > 1:
                message += f" (and {len(errors) - 1} more)"
            raise ToolValidationError(message, path=path)
        return arguments

    def _validator_for(self, tool: Tool) -> Draft202012Validator:
        validator = self._validators.get(tool.name)
        if validator is None:
            schema = tool.parameters or {"type": "object"}
            try:
                Draft202012Validator.check_schema(schema)
            except SchemaError as e:
                raise ToolValidationError(
                    f"Tool {tool.name!r} declares an invalid schema: {e.message}"
                ) from e
            validator = Draft202012Validator(schema)
            self._validators[tool.name] = validator
        return validator
