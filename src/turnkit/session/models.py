"""Session record models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from turnkit.model_registry import TokenUsage
from turnkit.models import new_id

SESSION_VERSION = 1


@dataclass
class SessionHeader:
    """First record of every session log."""

    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    version: int = SESSION_VERSION
    cwd: str = ""
    parent_session: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "header",
            "id": self.id,
            "created_at": self.created_at,
            "version": self.version,
            "cwd": self.cwd,
            "parent_session": self.parent_session,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionHeader:
        return cls(
            id=data["id"],
            created_at=float(data.get("created_at", 0.0)),
            version=int(data.get("version", SESSION_VERSION)),
            cwd=data.get("cwd", ""),
            parent_session=data.get("parent_session"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class CompactionRecord:
    """
    Substitutes a summary for a contiguous prefix of the active branch.

    ``start_id``..``end_id`` (inclusive) name the replaced branch messages.
    The originals stay in the log; only context construction changes. When
    ``truncated`` is set the summarizer failed and the prefix is simply
    dropped from context, so there is no summary message.
    """

    start_id: str
    end_id: str
    summary_message_id: str | None = None
    tokens_before: int = 0
    tokens_after: int = 0
    truncated: bool = False
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)

    @property
    def replaced_range(self) -> tuple[str, str]:
        return (self.start_id, self.end_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "compaction",
            "id": self.id,
            "start_id": self.start_id,
            "end_id": self.end_id,
            "summary_message_id": self.summary_message_id,
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
            "truncated": self.truncated,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompactionRecord:
        return cls(
            id=data["id"],
            start_id=data["start_id"],
            end_id=data["end_id"],
            summary_message_id=data.get("summary_message_id"),
            tokens_before=int(data.get("tokens_before", 0)),
            tokens_after=int(data.get("tokens_after", 0)),
            truncated=bool(data.get("truncated", False)),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class SessionMeta:
    """Session-level fields written on flush. The last one in a log wins."""

    active_leaf_id: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "meta",
            "active_leaf_id": self.active_leaf_id,
            "usage": self.usage.to_dict(),
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionMeta:
        return cls(
            active_leaf_id=data.get("active_leaf_id"),
            usage=TokenUsage.from_dict(data.get("usage")),
            metadata=dict(data.get("metadata") or {}),
            timestamp=float(data.get("timestamp", 0.0)),
        )
