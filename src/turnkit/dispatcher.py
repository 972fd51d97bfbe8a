"""
Tool execution dispatcher.

Runs the validated tool calls of one model response concurrently (bounded
by a semaphore) while handing results back in the order the model emitted
the calls. Every call is executed at most once, under a per-call timeout
and the turn's cancellation token. Failures never escape as exceptions:
they become ``failed`` tool calls whose structured error is shown to the
model.

Example:
    dispatcher = ToolDispatcher(registry, DispatcherConfig(max_concurrency=2))
    async for call in dispatcher.dispatch_ordered(calls, token):
        session.append(tool_result_message(call))
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from turnkit.config import DispatcherConfig
from turnkit.errors import AgentAbortedError, DuplicateExecutionError, ToolExecutionError
from turnkit.logging import get_logger
from turnkit.models import ToolCall
from turnkit.steering import CancellationToken
from turnkit.tools.base import Tool, ToolOutput
from turnkit.tools.registry import ToolRegistrar
from turnkit.utils.sanitize import cap_output, sanitize_output

logger = get_logger("dispatcher")

# Extra time a cancelled tool gets to report back after its own grace period
_CLEANUP_MARGIN = 1.0

# Callback invoked with (call, sanitized_chunk) for incremental tool output
UpdateCallback = Callable[[ToolCall, str], None]


class ToolDispatcher:
    """Executes tool calls under timeout, cancellation, and concurrency limits."""

    def __init__(
        self,
        tools: dict[str, Tool] | ToolRegistrar,
        config: DispatcherConfig | None = None,
        on_update: UpdateCallback | None = None,
    ) -> None:
        self._registrar = tools
        self.config = config or DispatcherConfig()
        self.on_update = on_update
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrency))
        self._submitted: set[str] = set()

    @property
    def tools(self) -> dict[str, Tool]:
        if isinstance(self._registrar, dict):
            return self._registrar
        return self._registrar.tools()

    def reset(self) -> None:
        """Forget submitted ids. Called by the loop at the start of each turn."""
        self._submitted.clear()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def dispatch(
        self, calls: list[ToolCall], cancel: CancellationToken
    ) -> list[ToolCall]:
        """Execute ``calls`` and return them, terminal, in emission order."""
        return [call async for call in self.dispatch_ordered(calls, cancel)]

    async def dispatch_ordered(
        self, calls: list[ToolCall], cancel: CancellationToken
    ) -> AsyncIterator[ToolCall]:
        """
        Yield each call as soon as it and every call before it are terminal.

        Calls that are not ``validated`` (e.g. failed validation) are yielded
        untouched in their slot. Closing the iterator early cancels whatever
        is still running.

        Raises:
            DuplicateExecutionError: If any id was already submitted, before
                anything runs.
        """
        self._claim(calls)
        tasks = [asyncio.create_task(self._execute(call, cancel)) for call in calls]
        try:
            for task in tasks:
                yield await task
        finally:
            pending = [t for t in tasks if not t.done()]
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def execute(self, call: ToolCall, cancel: CancellationToken) -> ToolCall:
        """Execute a single call."""
        self._claim([call])
        return await self._execute(call, cancel)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _claim(self, calls: list[ToolCall]) -> None:
        batch: set[str] = set()
        for call in calls:
            if call.id in self._submitted or call.id in batch:
                raise DuplicateExecutionError(f"Tool call {call.id!r} was already submitted")
            batch.add(call.id)
        self._submitted.update(batch)

    async def _execute(self, call: ToolCall, cancel: CancellationToken) -> ToolCall:
        if call.state != "validated":
            return call

        tool = self.tools.get(call.name)
        if tool is None:
            call.mark_executing()
            call.fail({"kind": "exception", "message": f"Tool {call.name!r} is not registered"})
            return call

        async with self._semaphore:
            call.mark_executing()
            if cancel.cancelled:
                call.fail({"kind": "killed", "message": f"Cancelled before start ({cancel.reason})"})
                return call

            logger.debug("Executing tool %s (%s)", call.name, call.id)
            try:
                output = await self._run_with_limits(tool, call, cancel)
            except ToolExecutionError as e:
                payload = e.to_payload()
                payload.pop("output", None)
                call.fail(payload, self._clean(e.output))
            except AgentAbortedError as e:
                call.fail({"kind": "killed", "message": str(e)})
            except asyncio.CancelledError:
                call.fail({"kind": "killed", "message": "Tool task was cancelled"})
                raise
            except Exception as e:
                logger.warning("Tool %s raised: %s", call.name, e, exc_info=True)
                call.fail({"kind": "exception", "message": f"{type(e).__name__}: {e}"})
            else:
                self._record_output(call, output)

        logger.debug("Tool %s (%s) -> %s", call.name, call.id, call.state)
        return call

    async def _run_with_limits(
        self, tool: Tool, call: ToolCall, cancel: CancellationToken
    ) -> ToolOutput | str:
        """
        Run ``tool`` with a per-call token linked to the turn token.

        On timeout or turn cancellation the per-call token is tripped and
        the tool gets ``grace_period`` (plus a margin) to terminate its work
        before its task is cancelled outright.
        """
        timeout = tool.timeout if tool.timeout is not None else self.config.tool_timeout
        call_token = CancellationToken(grace_period=self.config.grace_period)

        def on_output(chunk: str) -> None:
            if self.on_update is None:
                return
            text = sanitize_output(chunk)
            if text:
                self.on_update(call, text)

        exec_task = asyncio.create_task(
            tool.execute(dict(call.parsed_arguments or {}), call_token, on_output)
        )
        cancel_waiter = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {exec_task, cancel_waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exec_task in done:
                return exec_task.result()

            timed_out = cancel_waiter not in done
            call_token.cancel("timeout" if timed_out else (cancel.reason or "abort"))
            partial = await self._wait_for_cleanup(exec_task)
        finally:
            cancel_waiter.cancel()
            if not exec_task.done():
                exec_task.cancel()
                await asyncio.gather(exec_task, return_exceptions=True)

        if timed_out:
            raise ToolExecutionError(
                f"Tool {call.name!r} timed out after {timeout}s", kind="timeout", output=partial
            )
        raise ToolExecutionError(
            f"Tool {call.name!r} was cancelled ({cancel.reason})", kind="killed", output=partial
        )

    async def _wait_for_cleanup(self, exec_task: asyncio.Task) -> str:
        """Give a cancelled tool time to stop; return whatever output it reported."""
        try:
            result = await asyncio.wait_for(
                exec_task, timeout=self.config.grace_period + _CLEANUP_MARGIN
            )
        except asyncio.TimeoutError:
            logger.warning("Tool did not stop within the grace period; task cancelled")
            return ""
        except ToolExecutionError as e:
            return e.output
        except (AgentAbortedError, asyncio.CancelledError):
            return ""
        except Exception as e:
            logger.debug("Tool raised while stopping: %s", e)
            return ""
        return result.content if isinstance(result, ToolOutput) else str(result)

    def _clean(self, text: str) -> str:
        return cap_output(sanitize_output(text), self.config.max_output_chars)

    def _record_output(self, call: ToolCall, output: ToolOutput | str) -> None:
        if isinstance(output, ToolOutput):
            content = self._clean(output.content)
            if output.is_error:
                kind = "nonzero_exit" if output.exit_code not in (None, 0) else "exception"
                error: dict[str, Any] = {"kind": kind, "message": "Tool reported an error"}
                if output.exit_code is not None:
                    error["exit_code"] = output.exit_code
                call.fail(error, content)
                return
            call.complete(content)
        else:
            call.complete(self._clean(output))
