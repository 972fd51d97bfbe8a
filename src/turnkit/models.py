"""
Core conversation data models.

Messages are immutable once created: the agent loop accumulates a response
in mutable builders and only materializes a :class:`Message` when it is
final. Tool calls carry a forward-only state machine.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Union

from turnkit.errors import InvalidTransitionError
from turnkit.model_registry import TokenUsage

Role = Literal["user", "assistant", "tool"]

StopReason = Literal["end_turn", "max_tokens", "tool_calls", "aborted", "error"]

STOP_REASONS: tuple[str, ...] = ("end_turn", "max_tokens", "tool_calls", "aborted", "error")


def new_id() -> str:
    """Generate a fresh message / record id."""
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = "text"


@dataclass(frozen=True)
class ReasoningBlock:
    """Model reasoning ("thinking") text.

    ``signature`` is the opaque token some backends require to replay the
    block in a later request.
    """

    text: str
    signature: str | None = None
    type: str = "reasoning"


@dataclass(frozen=True)
class ToolCallBlock:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""
    type: str = "tool_call"


@dataclass(frozen=True)
class ToolResultBlock:
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False
    error: dict[str, Any] | None = None
    type: str = "tool_result"


ContentBlock = Union[TextBlock, ReasoningBlock, ToolCallBlock, ToolResultBlock]

_BLOCK_TYPES: dict[str, type] = {
    "text": TextBlock,
    "reasoning": ReasoningBlock,
    "tool_call": ToolCallBlock,
    "tool_result": ToolResultBlock,
}


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    data = dict(block.__dict__)
    if isinstance(block, ToolCallBlock):
        data["arguments"] = dict(block.arguments)
    return data


def block_from_dict(data: dict[str, Any]) -> ContentBlock:
    block_type = data.get("type")
    cls = _BLOCK_TYPES.get(block_type or "")
    if cls is None:
        raise ValueError(f"Unknown content block type: {block_type!r}")
    return cls(**data)


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """A finalized message in the conversation tree."""

    role: Role
    content: tuple[ContentBlock, ...] = ()
    id: str = field(default_factory=new_id)
    parent_id: str | None = None
    created_at: float = field(default_factory=time.time)
    stop_reason: str | None = None
    usage: TokenUsage | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def user(cls, text: str, **kwargs: Any) -> Message:
        return cls(role="user", content=(TextBlock(text),), **kwargs)

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def reasoning(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, ReasoningBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def with_parent(self, parent_id: str | None) -> Message:
        """Return a copy attached under ``parent_id``."""
        return Message(
            role=self.role,
            content=self.content,
            id=self.id,
            parent_id=parent_id,
            created_at=self.created_at,
            stop_reason=self.stop_reason,
            usage=self.usage,
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "role": self.role,
            "content": [block_to_dict(b) for b in self.content],
            "created_at": self.created_at,
            "stop_reason": self.stop_reason,
            "usage": self.usage.to_dict() if self.usage is not None else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        role = data.get("role")
        if role not in ("user", "assistant", "tool"):
            raise ValueError(f"Invalid message role: {role!r}")
        usage = data.get("usage")
        return cls(
            role=role,
            content=tuple(block_from_dict(b) for b in data.get("content", [])),
            id=data["id"],
            parent_id=data.get("parent_id"),
            created_at=float(data.get("created_at", 0.0)),
            stop_reason=data.get("stop_reason"),
            usage=TokenUsage.from_dict(usage) if usage is not None else None,
            metadata=dict(data.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

ToolCallState = Literal["pending", "validated", "executing", "completed", "failed"]

_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"validated", "failed"}),
    "validated": frozenset({"executing", "failed"}),
    "executing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


@dataclass
class ToolCall:
    """A tool invocation requested by the model within one turn.

    States only move forward:
    ``pending -> validated -> executing -> completed | failed``. Validation
    failure goes straight from ``pending`` to ``failed``.
    """

    id: str
    name: str
    index: int = 0
    raw_argument_fragments: list[str] = field(default_factory=list)
    parsed_arguments: dict[str, Any] | None = None
    state: ToolCallState = "pending"
    result: str | None = None
    error: dict[str, Any] | None = None
    history: list[str] = field(default_factory=lambda: ["pending"])

    @property
    def raw_arguments(self) -> str:
        return "".join(self.raw_argument_fragments)

    @property
    def is_terminal(self) -> bool:
        return self.state in ("completed", "failed")

    def transition(self, new_state: ToolCallState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Tool call {self.id!r}: cannot move from {self.state} to {new_state}"
            )
        self.state = new_state
        self.history.append(new_state)

    def mark_validated(self, arguments: dict[str, Any]) -> None:
        self.transition("validated")
        self.parsed_arguments = arguments

    def mark_executing(self) -> None:
        self.transition("executing")

    def complete(self, result: str) -> None:
        self.transition("completed")
        self.result = result

    def fail(self, error: dict[str, Any], output: str = "") -> None:
        self.transition("failed")
        self.error = error
        self.result = output or None

    def to_block(self) -> ToolCallBlock:
        return ToolCallBlock(
            id=self.id,
            name=self.name,
            arguments=dict(self.parsed_arguments or {}),
            raw_arguments=self.raw_arguments,
        )

    def to_result_block(self) -> ToolResultBlock:
        """Render the outcome as the content the model will see."""
        if self.state == "completed":
            return ToolResultBlock(
                tool_call_id=self.id, name=self.name, content=self.result or "(no output)"
            )
        error = self.error or {"kind": "exception", "message": "tool call did not complete"}
        content = json.dumps({"error": error}, ensure_ascii=False)
        if self.result:
            content = f"{content}\n{self.result}"
        return ToolResultBlock(
            tool_call_id=self.id,
            name=self.name,
            content=content,
            is_error=True,
            error=error,
        )
