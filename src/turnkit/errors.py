"""
Error taxonomy for turnkit.

Every error carries enough structure to be turned into a tool-result payload
(``to_payload()``) or a canonical ``error`` stream event, so failures can be
reported to the model or the caller without losing their kind.
"""

from __future__ import annotations

from typing import Any, Literal

ProviderErrorKind = Literal[
    "rate_limit",
    "server",
    "timeout",
    "connection",
    "auth",
    "bad_request",
    "context_length",
    "not_found",
    "unknown",
]

ToolErrorKind = Literal["timeout", "nonzero_exit", "killed", "exception"]

RETRYABLE_KINDS: frozenset[str] = frozenset({"rate_limit", "server", "timeout", "connection"})


class TurnkitError(Exception):
    """Base class for all turnkit errors."""

    kind: str = "error"

    def to_payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class ProviderError(TurnkitError):
    """A model backend request failed.

    ``retryable`` errors (rate limits, transient server failures, timeouts)
    are retried inside the adapter; fatal ones surface immediately.
    """

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = "unknown",
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = kind in RETRYABLE_KINDS if retryable is None else retryable
        self.status_code = status_code
        self.retry_after = retry_after

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["retryable"] = self.retryable
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        return payload


class ToolValidationError(TurnkitError):
    """Tool-call arguments did not parse or did not match the tool schema."""

    kind = "validation"

    def __init__(self, message: str, path: list[str | int] | None = None) -> None:
        super().__init__(message)
        self.path = path or []

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.path:
            payload["path"] = list(self.path)
        return payload


class ToolExecutionError(TurnkitError):
    """A tool ran but failed (timeout, nonzero exit, killed, or raised)."""

    def __init__(
        self,
        message: str,
        kind: ToolErrorKind = "exception",
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.exit_code = exit_code
        self.output = output

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        if self.output:
            payload["output"] = self.output
        return payload


class AgentAbortedError(TurnkitError):
    """Raised when the current operation is cancelled via abort or steering."""

    kind = "aborted"


class CompactionError(TurnkitError):
    """Summarization failed; compaction degrades to truncation."""

    kind = "compaction"


class SessionLoadError(TurnkitError):
    """A persisted session log is corrupt or unreadable."""

    kind = "session_load"


class SessionLockedError(TurnkitError):
    """Another loop already owns this session."""

    kind = "session_locked"


class InvalidTransitionError(TurnkitError):
    """A tool call was asked to move backwards in its state machine."""

    kind = "invalid_transition"


class DuplicateExecutionError(TurnkitError):
    """A tool call id was submitted for execution more than once."""

    kind = "duplicate_execution"


class LoopBusyError(TurnkitError):
    """``run()`` was called while the loop is already running."""

    kind = "loop_busy"
