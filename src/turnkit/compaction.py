"""
Context compaction.

Keeps the request context within the model's window by replacing the
oldest part of the active branch with a model-written summary. The
replaced messages stay in the session; only context construction changes
(see :meth:`turnkit.session.Session.context_messages`).

Example:
    compactor = Compactor(CompactionPolicy(context_window=32_000, keep_recent=6))

    # Before each model request:
    record = await compactor.maybe_compact(session, summarize)
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields
from typing import Any

from turnkit.errors import AgentAbortedError
from turnkit.logging import get_logger
from turnkit.models import (
    Message,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)
from turnkit.session.models import CompactionRecord
from turnkit.session.session import Session

logger = get_logger("compaction")

SUMMARY_PREFIX = "[Summary of earlier conversation]"
SUMMARY_KIND = "compaction_summary"

DEFAULT_CONTEXT_WINDOW = 128_000

# Takes the messages to replace, returns summary text
Summarizer = Callable[[list[Message]], Awaitable[str]]


# ---------------------------------------------------------------------------
# Token estimation
# ---------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """
    Estimate token count from text using the chars/4 heuristic.

    Deliberately rough; it only has to be consistent for threshold checks.
    """
    return max(1, len(text) // 4) if text else 0


def estimate_message_tokens(message: Message) -> int:
    """Estimate the cost of one message, including per-block overhead."""
    tokens = 4
    for block in message.content:
        if isinstance(block, (TextBlock, ReasoningBlock)):
            tokens += estimate_tokens(block.text)
        elif isinstance(block, ToolCallBlock):
            tokens += 4 + estimate_tokens(block.name)
            tokens += estimate_tokens(block.raw_arguments or json.dumps(block.arguments))
        elif isinstance(block, ToolResultBlock):
            tokens += 4 + estimate_tokens(block.content)
    return tokens


def estimate_messages_tokens(messages: list[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass
class CompactionPolicy:
    """
    When and how much to compact.

    Attributes:
        context_window: Tokens the model accepts. ``None`` means the
            model definition decides, or :data:`DEFAULT_CONTEXT_WINDOW`
            when the model is unknown.
        threshold: Compact when the context estimate exceeds this fraction
            of ``context_window``.
        keep_recent: Number of most recent context messages kept verbatim.
        reserve_tokens: Output budget for the summary request.
        enabled: Turn automatic compaction off entirely.
    """

    context_window: int | None = None
    threshold: float = 0.8
    keep_recent: int = 6
    reserve_tokens: int = 4096
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.context_window is not None and self.context_window <= 0:
            raise ValueError(f"context_window must be > 0, got {self.context_window}")
        if not 0.0 < self.threshold <= 1.0:
            raise ValueError(f"threshold must be in (0, 1], got {self.threshold}")
        if self.keep_recent < 0:
            raise ValueError(f"keep_recent must be >= 0, got {self.keep_recent}")

    @property
    def trigger_tokens(self) -> int:
        return int((self.context_window or DEFAULT_CONTEXT_WINDOW) * self.threshold)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompactionPolicy:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ---------------------------------------------------------------------------
# Compactor
# ---------------------------------------------------------------------------


class Compactor:
    """Decides when to compact a session and records the result."""

    def __init__(self, policy: CompactionPolicy | None = None) -> None:
        self.policy = policy or CompactionPolicy()

    def should_compact(self, context: list[Message]) -> bool:
        if not self.policy.enabled:
            return False
        return estimate_messages_tokens(context) > self.policy.trigger_tokens

    def select_prefix(self, context: list[Message]) -> list[Message]:
        """
        The oldest messages of ``context`` to replace.

        Everything except the last ``keep_recent`` messages, with the
        boundary moved earlier so the kept part never starts with a tool
        result whose call would be summarized away.
        """
        cut = len(context) - self.policy.keep_recent
        while 0 < cut < len(context) and context[cut].role == "tool":
            cut -= 1
        return context[: max(cut, 0)]

    async def maybe_compact(
        self,
        session: Session,
        summarize: Summarizer,
        force: bool = False,
    ) -> CompactionRecord | None:
        """
        Compact ``session`` if its context is over the threshold.

        Returns the new :class:`CompactionRecord`, or ``None`` when nothing
        was done. A summarizer failure degrades to truncation: the record is
        stored with ``truncated=True`` and no summary message.

        Raises:
            AgentAbortedError: If the summarizer was cancelled; nothing is
                recorded.
        """
        context = session.context_messages()
        if not force and not self.should_compact(context):
            return None

        prefix = self.select_prefix(context)
        on_branch = [m for m in prefix if not session.is_detached(m.id)]
        if not on_branch:
            logger.debug("Nothing to compact in session %s", session.id)
            return None

        tokens_before = estimate_messages_tokens(context)
        kept = context[len(prefix) :]
        logger.info(
            "Compacting session %s: %d of %d messages (~%d tokens)",
            session.id,
            len(prefix),
            len(context),
            tokens_before,
        )

        summary_message: Message | None = None
        try:
            summary_text = await summarize(prefix)
        except AgentAbortedError:
            raise
        except Exception as e:
            logger.warning("Summarization failed, truncating instead: %s", e)
        else:
            summary_message = session.add_detached(
                Message.user(
                    f"{SUMMARY_PREFIX}\n{summary_text.strip()}",
                    metadata={"kind": SUMMARY_KIND},
                )
            )

        after = ([summary_message] if summary_message else []) + kept
        record = CompactionRecord(
            start_id=on_branch[0].id,
            end_id=on_branch[-1].id,
            summary_message_id=summary_message.id if summary_message else None,
            tokens_before=tokens_before,
            tokens_after=estimate_messages_tokens(after),
            truncated=summary_message is None,
        )
        session.record_compaction(record)
        return record
