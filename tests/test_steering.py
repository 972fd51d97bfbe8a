"""Tests for CancellationToken and SteeringQueue."""

from __future__ import annotations

import asyncio

import pytest

from turnkit.errors import AgentAbortedError
from turnkit.steering import ABORT, STEERING, CancellationToken, SteeringQueue


class TestCancellationToken:
    def test_first_reason_sticks(self) -> None:
        token = CancellationToken()
        assert not token.cancelled

        token.cancel(STEERING)
        token.cancel(ABORT)

        assert token.cancelled
        assert token.reason == STEERING
        assert "steering" in repr(token)

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(AgentAbortedError, match="abort"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait_wakes_on_cancel(self) -> None:
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        await asyncio.wait_for(token.wait(), timeout=1)

        assert token.reason == ABORT


class TestSteeringQueue:
    @pytest.mark.asyncio
    async def test_steer_trips_current_token(self) -> None:
        queue = SteeringQueue()
        token = queue.new_token()

        queue.steer("focus on tests")

        assert token.cancelled
        assert token.reason == STEERING
        assert queue.has_steering
        assert queue.drain_steering() == ["focus on tests"]
        assert not queue.has_steering

    @pytest.mark.asyncio
    async def test_steer_without_turn_only_queues(self) -> None:
        queue = SteeringQueue()
        queue.steer("one")
        queue.steer("two")

        token = queue.new_token()

        assert not token.cancelled
        assert queue.drain_steering() == ["one", "two"]

    @pytest.mark.asyncio
    async def test_released_token_is_not_tripped(self) -> None:
        queue = SteeringQueue()
        token = queue.new_token()
        queue.release_token()

        queue.steer("later")

        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_follow_ups_are_fifo_and_never_cancel(self) -> None:
        queue = SteeringQueue()
        token = queue.new_token()

        queue.follow_up("first")
        queue.follow_up("second")

        assert not token.cancelled
        assert queue.pending_follow_ups == 2
        assert queue.pop_follow_up() == "first"
        assert queue.pop_follow_up() == "second"
        assert queue.pop_follow_up() is None

    @pytest.mark.asyncio
    async def test_abort_persists_until_reset(self) -> None:
        queue = SteeringQueue()
        current = queue.new_token()

        queue.abort()

        assert current.reason == ABORT
        assert queue.abort_requested
        assert queue.new_token().cancelled
        queue.reset_abort()
        assert not queue.new_token().cancelled
