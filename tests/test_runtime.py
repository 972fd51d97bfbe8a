"""Tests for the subprocess runtime."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from turnkit.runtime import ProcessRuntime
from turnkit.steering import CancellationToken


@pytest.fixture
def runtime() -> ProcessRuntime:
    return ProcessRuntime(grace_period=0.3)


class TestProcessRuntime:
    @pytest.mark.asyncio
    async def test_streams_merged_output(self, runtime: ProcessRuntime, tmp_path: Path) -> None:
        chunks: list[str] = []

        result = await runtime.run_shell(
            "echo out; echo err >&2; pwd", cwd=str(tmp_path), on_output=chunks.append
        )

        assert result.success
        assert result.exit_code == 0
        assert result.output == f"out\nerr\n{tmp_path}\n"
        assert "".join(chunks) == result.output
        assert result.duration_ms > 0

    @pytest.mark.asyncio
    async def test_exit_code_and_env(self, runtime: ProcessRuntime) -> None:
        result = await runtime.run_shell('echo "$GREETING"; exit 4', env={"GREETING": "hey"})

        assert result.exit_code == 4
        assert result.output == "hey\n"
        assert not result.success

    @pytest.mark.asyncio
    async def test_run_exec(self, runtime: ProcessRuntime) -> None:
        result = await runtime.run_exec(["printf", "%s-%s", "a", "b"])
        assert result.output == "a-b"

    @pytest.mark.asyncio
    async def test_timeout_kills_process_group(self, runtime: ProcessRuntime) -> None:
        start = time.monotonic()

        # The grandchild sleep must die with its shell
        result = await runtime.run_shell("sleep 30 & sleep 30; wait", timeout=0.2)

        assert result.timed_out
        assert not result.success
        assert time.monotonic() - start < 5

    @pytest.mark.asyncio
    async def test_sigterm_ignored_needs_sigkill(self, runtime: ProcessRuntime) -> None:
        result = await runtime.run_shell(
            "trap '' TERM; echo ready; while true; do sleep 0.05; done", timeout=0.3
        )

        assert result.timed_out
        assert result.force_killed
        assert result.output.startswith("ready")

    @pytest.mark.asyncio
    async def test_cancel_token(self, runtime: ProcessRuntime) -> None:
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.1, token.cancel)

        result = await runtime.run_shell("sleep 30", cancel=token, timeout=10)

        assert result.cancelled
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_token_grace_period_overrides_runtime(self) -> None:
        runtime = ProcessRuntime(grace_period=5.0)
        token = CancellationToken(grace_period=0.1)
        asyncio.get_running_loop().call_later(0.1, token.cancel)

        start = time.monotonic()
        result = await runtime.run_shell("trap '' TERM; sleep 30 & wait", cancel=token, timeout=10)

        assert result.cancelled
        assert result.force_killed
        assert time.monotonic() - start < 2

    @pytest.mark.asyncio
    async def test_already_cancelled_does_not_start(self, runtime: ProcessRuntime) -> None:
        token = CancellationToken()
        token.cancel()

        result = await runtime.run_shell("echo never", cancel=token)

        assert result.cancelled
        assert result.exit_code is None
        assert result.output == ""

    @pytest.mark.asyncio
    async def test_output_is_capped_to_tail(self) -> None:
        runtime = ProcessRuntime(max_output_size=10)

        result = await runtime.run_shell("printf '0123456789abcdef'")

        assert result.output == "6789abcdef"

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(self, runtime: ProcessRuntime) -> None:
        result = await runtime.run_shell("printf 'ok\\377'")
        assert result.output == "ok\ufffd"

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_reading(self, runtime: ProcessRuntime) -> None:
        def callback(chunk: str) -> None:
            raise RuntimeError("ui went away")

        result = await runtime.run_shell("echo still", on_output=callback)

        assert result.output == "still\n"
