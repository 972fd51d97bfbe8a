"""Read tool - read file contents with optional line range."""
from __future__ import annotations

import asyncio
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Any

from turnkit.errors import ToolExecutionError
from turnkit.logging import get_logger
from turnkit.tools.base import OutputCallback, Tool

if TYPE_CHECKING:
    from turnkit.steering import CancellationToken

logger = get_logger("tools.read")

# Maximum number of lines to read by default
_DEFAULT_LIMIT = 2000

# Maximum line length before truncation
_MAX_LINE_LENGTH = 2000


class ReadTool(Tool):
    """Read text file contents as numbered lines."""

    def __init__(self, cwd: str | None = None) -> None:
        self.cwd = cwd or "."

    @property
    def name(self) -> str:
        return "read"

    @property
    def description(self) -> str:
        return (
            "Read the contents of a text file and return numbered lines. "
            "Use offset and limit to read specific line ranges in large files."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Absolute or relative path to the file to read.",
                },
                "offset": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Line number to start reading from (1-based). Defaults to 1.",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "description": f"Maximum number of lines to read. Defaults to {_DEFAULT_LIMIT}.",
                },
            },
            "required": ["path"],
            "additionalProperties": False,
        }

    async def execute(
        self,
        args: dict[str, Any],
        cancel: CancellationToken,
        on_output: OutputCallback | None = None,
    ) -> str:
        resolved = self._resolve_path(args["path"])
        offset = args.get("offset", 1)
        limit = args.get("limit", _DEFAULT_LIMIT)

        if not resolved.exists():
            raise ToolExecutionError(f"File not found: {resolved}")
        if resolved.is_dir():
            raise ToolExecutionError(f"{resolved} is a directory, not a file")

        cancel.raise_if_cancelled()
        data = await asyncio.to_thread(resolved.read_bytes)
        if b"\x00" in data[:8192]:
            mime = mimetypes.guess_type(str(resolved))[0] or "application/octet-stream"
            return f"Binary file: {resolved} ({mime}, {len(data)} bytes)"

        return self._format_lines(resolved, data.decode("utf-8", errors="replace"), offset, limit)

    def _resolve_path(self, file_path: str) -> Path:
        p = Path(file_path).expanduser()
        if p.is_absolute():
            return p
        return Path(self.cwd) / p

    @staticmethod
    def _format_lines(path: Path, text: str, offset: int, limit: int) -> str:
        """Format a slice of ``text`` with line numbers, like ``cat -n``."""
        all_lines = text.splitlines()
        total_lines = len(all_lines)
        if total_lines == 0:
            return f"File {path} is empty (0 lines)."

        offset = max(1, min(offset, total_lines))
        start_idx = offset - 1
        end_idx = min(start_idx + limit, total_lines)

        width = len(str(end_idx))
        output_lines: list[str] = []
        for i, line in enumerate(all_lines[start_idx:end_idx], start=offset):
            if len(line) > _MAX_LINE_LENGTH:
                line = line[:_MAX_LINE_LENGTH] + "... (truncated)"
            output_lines.append(f"{i:>{width}}\t{line}")

        result = "\n".join(output_lines)
        if start_idx > 0 or end_idx < total_lines:
            result += (
                f"\n\n(Showing lines {offset}-{end_idx} of {total_lines} total. "
                f"Use offset/limit to read more.)"
            )
        return result
