"""Tool output sanitization and size capping."""

from __future__ import annotations

import re

ESC = "\033"

# OSC: ESC ] ... (BEL | ESC \)
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?")
# CSI: ESC [ params intermediates final
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
# Any other two-byte escape, plus a dangling ESC
_ESC_RE = re.compile(r"\x1b[@-_]?")
# C0 controls except tab and newline, plus DEL and C1 controls
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")


def sanitize_output(data: str | bytes) -> str:
    """
    Make captured tool output safe to feed back to a model.

    Invalid UTF-8 is replaced, ANSI/OSC escape sequences are stripped,
    ``\\r\\n`` is normalized to ``\\n``, and remaining control characters
    (including NUL) are removed. Tabs and newlines survive.
    """
    if isinstance(data, bytes):
        text = data.decode("utf-8", errors="replace")
    else:
        text = data
    text = _OSC_RE.sub("", text)
    text = _CSI_RE.sub("", text)
    text = _ESC_RE.sub("", text)
    text = text.replace("\r\n", "\n")
    return _CONTROL_RE.sub("", text)


def truncation_marker(omitted: int) -> str:
    return f"\n[... truncated {omitted} characters ...]\n"


def cap_output(text: str, max_chars: int) -> str:
    """
    Cap ``text`` at ``max_chars``, keeping the head and tail.

    The omitted middle is replaced with an explicit marker so the model
    knows output was dropped.
    """
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    head = max_chars // 2
    tail = max_chars - head
    return text[:head] + truncation_marker(omitted) + (text[-tail:] if tail else "")
