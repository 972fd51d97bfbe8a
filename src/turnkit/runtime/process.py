"""
Subprocess runtime with streaming output, timeouts, and two-phase kill.

Every command runs in its own session (and therefore its own process
group), so terminating it reaches grandchildren too: SIGTERM first, then
SIGKILL if the group is still alive after the grace period.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from turnkit.logging import get_logger

if TYPE_CHECKING:
    from turnkit.steering import CancellationToken

logger = get_logger("runtime.process")

# Callback type for streaming tool output
OutputCallback = Callable[[str], None]

_READ_CHUNK = 4096


@dataclass
class ProcessResult:
    """Outcome of one subprocess run."""

    exit_code: int | None
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False
    force_killed: bool = False  # SIGKILL was needed
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


class ProcessRuntime:
    """
    Runs shell commands or argv lists as isolated process groups.

    Output (stdout and stderr merged) is decoded incrementally and passed
    to ``on_output`` as it arrives. Either a timeout or a tripped
    cancellation token terminates the whole group.
    """

    def __init__(
        self,
        shell: str = "/bin/bash",
        grace_period: float = 2.0,
        max_output_size: int = 1_000_000,
    ) -> None:
        self.shell = shell
        self.grace_period = grace_period
        self.max_output_size = max_output_size

    async def run_shell(
        self,
        command: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
        on_output: OutputCallback | None = None,
    ) -> ProcessResult:
        """Run ``command`` through the configured shell."""
        return await self.run_exec(
            [self.shell, "-c", command],
            cwd=cwd,
            env=env,
            timeout=timeout,
            cancel=cancel,
            on_output=on_output,
        )

    async def run_exec(
        self,
        argv: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
        on_output: OutputCallback | None = None,
    ) -> ProcessResult:
        start = time.perf_counter()
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        if cancel is not None and cancel.cancelled:
            return ProcessResult(exit_code=None, cancelled=True)
        grace = self.grace_period
        if cancel is not None and cancel.grace_period is not None:
            grace = cancel.grace_period

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
            env=full_env,
            start_new_session=True,
        )
        logger.debug("Started pid=%s: %s", process.pid, argv)

        chunks: list[str] = []
        reader = asyncio.create_task(self._read_output(process, chunks, on_output))
        waiters: set[asyncio.Task] = {reader}
        cancel_waiter: asyncio.Task | None = None
        if cancel is not None:
            cancel_waiter = asyncio.create_task(cancel.wait())
            waiters.add(cancel_waiter)

        timed_out = cancelled = force_killed = False
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if reader not in done:
                if cancel_waiter is not None and cancel_waiter in done:
                    cancelled = True
                else:
                    timed_out = True
                force_killed = await self.terminate(process, grace)
            await reader
            await process.wait()
        except asyncio.CancelledError:
            await self.terminate(process, grace)
            reader.cancel()
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        output = "".join(chunks)
        if len(output) > self.max_output_size:
            output = output[-self.max_output_size :]

        result = ProcessResult(
            exit_code=process.returncode,
            output=output,
            timed_out=timed_out,
            cancelled=cancelled,
            force_killed=force_killed,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        logger.debug(
            "pid=%s finished (exit=%s, timed_out=%s, cancelled=%s, %d chars)",
            process.pid,
            result.exit_code,
            timed_out,
            cancelled,
            len(output),
        )
        return result

    async def terminate(
        self, process: asyncio.subprocess.Process, grace_period: float | None = None
    ) -> bool:
        """
        Two-phase termination of the process group.

        Waits ``grace_period`` (default: the runtime's) after SIGTERM.
        Returns True if SIGKILL was needed.
        """
        grace = self.grace_period if grace_period is None else grace_period
        if process.returncode is not None:
            self._signal_group(process, signal.SIGKILL)
            return False

        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.info("pid=%s ignored SIGTERM for %.1fs, killing", process.pid, grace)
            self._signal_group(process, signal.SIGKILL)
            await process.wait()
            return True
        # Leader is gone; make sure nothing else in its group survives.
        self._signal_group(process, signal.SIGKILL)
        return False

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group id was reused by an unrelated process.
            logger.debug("Cannot signal process group %s", process.pid)

    @staticmethod
    async def _read_output(
        process: asyncio.subprocess.Process,
        chunks: list[str],
        on_output: OutputCallback | None,
    ) -> None:
        if process.stdout is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await process.stdout.read(_READ_CHUNK)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    chunks.append(tail)
                return
            text = decoder.decode(data)
            if not text:
                continue
            chunks.append(text)
            if on_output is not None:
                try:
                    on_output(text)
                except Exception as e:
                    logger.warning("on_output callback failed: %s", e)
