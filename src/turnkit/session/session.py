"""
The in-memory conversation tree.

A :class:`Session` owns a flat ``id -> Message`` store, a children index,
and the active-leaf pointer. Appending creates a child of the active leaf;
forking moves the leaf to an earlier message so the next append starts a
sibling branch. Nothing already stored is ever modified.

When a :class:`~turnkit.session.store.SessionStore` is attached, every
message and compaction record is written through to the log as it is
added; session-level fields (active leaf, usage) are written on
:meth:`Session.flush`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from turnkit.errors import LoopBusyError
from turnkit.logging import get_logger
from turnkit.model_registry import TokenUsage
from turnkit.models import Message
from turnkit.session.models import CompactionRecord, SessionHeader, SessionMeta
from turnkit.session.tree import get_branches, path_to

if TYPE_CHECKING:
    from turnkit.session.store import SessionStore

logger = get_logger("session")

DETACHED_KEY = "detached"


class Session:
    """A branchable conversation with usage totals and compaction records."""

    def __init__(
        self,
        header: SessionHeader | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self.header = header or SessionHeader()
        self.store = store
        self.messages: dict[str, Message] = {}
        self._children: dict[str | None, list[str]] = {None: []}
        self._detached: set[str] = set()
        self.active_leaf_id: str | None = None
        self.usage = TokenUsage()
        self.compactions: list[CompactionRecord] = []
        self.metadata: dict[str, Any] = {}
        self._owner: object | None = None

    @property
    def id(self) -> str:
        return self.header.id

    def __len__(self) -> int:
        return len(self.messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self.messages

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @property
    def owner(self) -> object | None:
        """The agent loop currently driving this session, if any."""
        return self._owner

    def claim(self, owner: object) -> None:
        """
        Make ``owner`` the only writer of this session until :meth:`release`.

        Raises:
            LoopBusyError: If a different owner holds the session.
        """
        if self._owner is not None and self._owner is not owner:
            raise LoopBusyError(f"Session {self.id} is already being driven by another loop")
        self._owner = owner

    def release(self, owner: object) -> None:
        if self._owner is owner:
            self._owner = None

    def get(self, message_id: str) -> Message | None:
        return self.messages.get(message_id)

    def is_detached(self, message_id: str) -> bool:
        return message_id in self._detached

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, message: Message) -> Message:
        """
        Append ``message`` as a child of the active leaf and advance the leaf.

        The stored message is a copy re-parented onto the leaf; it is
        returned.
        """
        stored = message.with_parent(self.active_leaf_id)
        self._insert(stored)
        self.active_leaf_id = stored.id
        if stored.usage is not None:
            self.add_usage(stored.usage)
        return stored

    def add_detached(self, message: Message) -> Message:
        """Store a message outside every branch (e.g. a compaction summary)."""
        stored = Message(
            role=message.role,
            content=message.content,
            id=message.id,
            parent_id=None,
            created_at=message.created_at,
            stop_reason=message.stop_reason,
            usage=message.usage,
            metadata={**message.metadata, DETACHED_KEY: True},
        )
        self._insert(stored)
        return stored

    def fork(self, message_id: str | None) -> None:
        """
        Move the active leaf to ``message_id``.

        The next :meth:`append` creates a new child there, i.e. a new branch.
        ``None`` starts a fresh root.
        """
        if message_id is not None:
            if message_id not in self.messages:
                raise KeyError(f"Message {message_id!r} not found in session {self.id}")
            if message_id in self._detached:
                raise ValueError(f"Message {message_id!r} is not part of any branch")
        self.active_leaf_id = message_id
        logger.debug("Session %s: active leaf -> %s", self.id, message_id)

    def add_usage(self, usage: TokenUsage) -> None:
        """Add to the session totals. Negative counts are ignored."""
        self.usage += TokenUsage(
            input_tokens=max(0, usage.input_tokens),
            output_tokens=max(0, usage.output_tokens),
            cache_read_tokens=max(0, usage.cache_read_tokens),
            cache_write_tokens=max(0, usage.cache_write_tokens),
            reasoning_tokens=max(0, usage.reasoning_tokens),
        )

    def record_compaction(self, record: CompactionRecord) -> None:
        for ref in (record.start_id, record.end_id, record.summary_message_id):
            if ref is not None and ref not in self.messages:
                raise KeyError(f"Compaction references unknown message {ref!r}")
        self.compactions.append(record)
        if self.store is not None:
            self.store.append_compaction(record)

    def flush(self) -> None:
        """Write session-level fields (active leaf, usage, metadata) to the log."""
        if self.store is not None:
            self.store.append_meta(self.meta())

    def meta(self) -> SessionMeta:
        return SessionMeta(
            active_leaf_id=self.active_leaf_id,
            usage=TokenUsage.from_dict(self.usage.to_dict()),
            metadata=dict(self.metadata),
        )

    def _insert(self, message: Message) -> None:
        if message.id in self.messages:
            raise ValueError(f"Duplicate message id {message.id!r}")
        if message.parent_id is not None and message.parent_id not in self.messages:
            raise KeyError(f"Parent {message.parent_id!r} not found in session {self.id}")
        self.messages[message.id] = message
        if message.metadata.get(DETACHED_KEY):
            self._detached.add(message.id)
        else:
            self._children.setdefault(message.parent_id, []).append(message.id)
        self._children.setdefault(message.id, [])
        if self.store is not None:
            self.store.append_message(message)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def active_branch(self) -> list[Message]:
        """Root-to-leaf path through the active leaf."""
        return path_to(self.messages, self.active_leaf_id)

    def children(self, message_id: str | None) -> list[Message]:
        """Direct children of ``message_id`` (``None`` for roots), oldest first."""
        return [self.messages[cid] for cid in self._children.get(message_id, [])]

    def branches(self) -> list[list[Message]]:
        """Every root-to-leaf path, excluding detached messages."""
        return get_branches(self.messages, self._children, exclude=self._detached)

    def applicable_compaction(
        self, branch: list[Message] | None = None
    ) -> CompactionRecord | None:
        """The latest compaction whose replaced range lies on ``branch``."""
        branch = branch if branch is not None else self.active_branch()
        positions = {m.id: i for i, m in enumerate(branch)}
        best: CompactionRecord | None = None
        best_end = -1
        for record in self.compactions:
            start = positions.get(record.start_id)
            end = positions.get(record.end_id)
            if start is None or end is None or start > end:
                continue
            if end >= best_end:
                best, best_end = record, end
        return best

    def context_messages(self) -> list[Message]:
        """
        The messages to send to the model.

        The active branch, with the latest applicable compaction applied:
        ``[summary] + messages after the replaced range``.
        """
        branch = self.active_branch()
        record = self.applicable_compaction(branch)
        if record is None:
            return branch
        end_index = next(i for i, m in enumerate(branch) if m.id == record.end_id)
        kept = branch[end_index + 1 :]
        if record.summary_message_id is not None:
            return [self.messages[record.summary_message_id], *kept]
        return kept

    def __repr__(self) -> str:
        return (
            f"Session(id={self.id!r}, messages={len(self.messages)}, "
            f"leaf={self.active_leaf_id!r})"
        )
