"""Bash tool - execute shell commands in an isolated process group."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from turnkit.errors import ToolExecutionError
from turnkit.logging import get_logger
from turnkit.runtime.process import ProcessRuntime
from turnkit.tools.base import OutputCallback, Tool, ToolOutput

if TYPE_CHECKING:
    from turnkit.steering import CancellationToken

logger = get_logger("tools.bash")

# Default timeout in seconds
_DEFAULT_TIMEOUT = 120.0


class BashTool(Tool):
    """Execute shell commands and return their combined output."""

    def __init__(
        self,
        cwd: str | None = None,
        runtime: ProcessRuntime | None = None,
    ) -> None:
        self.cwd = cwd or "."
        self.runtime = runtime or ProcessRuntime()

    @property
    def name(self) -> str:
        return "bash"

    @property
    def description(self) -> str:
        return (
            "Execute a shell command and return its output (stdout and stderr combined). "
            "Commands run in the working directory. Use this for git, build tools, "
            "and other terminal operations."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute.",
                },
                "timeout": {
                    "type": "number",
                    "exclusiveMinimum": 0,
                    "description": f"Timeout in seconds. Defaults to {int(_DEFAULT_TIMEOUT)}.",
                },
            },
            "required": ["command"],
        }

    async def execute(
        self,
        args: dict[str, Any],
        cancel: CancellationToken,
        on_output: OutputCallback | None = None,
    ) -> ToolOutput:
        command = args["command"]
        timeout = min(float(args.get("timeout", _DEFAULT_TIMEOUT)), 600.0)

        logger.debug("Executing: %s (cwd=%s, timeout=%ss)", command, self.cwd, timeout)
        try:
            result = await self.runtime.run_shell(
                command,
                cwd=self.cwd,
                timeout=timeout,
                cancel=cancel,
                on_output=on_output,
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise ToolExecutionError(f"Cannot start command: {e}") from e

        output = result.output.rstrip() or "(no output)"
        if result.timed_out:
            raise ToolExecutionError(
                f"Command timed out after {timeout}s", kind="timeout", output=output
            )
        if result.cancelled:
            raise ToolExecutionError("Command was cancelled", kind="killed", output=output)
        if result.exit_code is not None and result.exit_code < 0:
            raise ToolExecutionError(
                f"Command killed by signal {-result.exit_code}",
                kind="killed",
                exit_code=result.exit_code,
                output=output,
            )
        if result.exit_code != 0:
            raise ToolExecutionError(
                f"Command failed with exit code {result.exit_code}",
                kind="nonzero_exit",
                exit_code=result.exit_code,
                output=output,
            )

        logger.debug("Command finished (%d chars)", len(output))
        return ToolOutput(content=output, exit_code=0)
