"""
Steering, follow-up, and cancellation primitives.

A :class:`CancellationToken` is created for every turn and handed to the
provider adapter and the tool dispatcher. :class:`SteeringQueue` is the
caller-facing side: ``steer()`` and ``abort()`` trip the current turn's
token, ``follow_up()`` only queues.

Example:
    queue = SteeringQueue()
    loop = AgentLoop(..., steering=queue)

    task = asyncio.create_task(loop.run("Refactor utils.py"))
    queue.steer("Actually, only touch the parser")
    result = await task
"""

from __future__ import annotations

import asyncio

from turnkit.errors import AgentAbortedError
from turnkit.logging import get_logger

logger = get_logger("steering")

STEERING = "steering"
ABORT = "abort"


class CancellationToken:
    """
    One-shot cancellation signal for a single turn.

    Once cancelled a token stays cancelled; a new turn always gets a new
    token. ``grace_period``, when set, is how long a holder that runs
    processes may wait between SIGTERM and SIGKILL once the token trips.
    """

    def __init__(self, grace_period: float | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self.grace_period = grace_period

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """``"steering"``, ``"abort"``, or whatever the canceller passed."""
        return self._reason

    @property
    def event(self) -> asyncio.Event:
        return self._event

    def cancel(self, reason: str = ABORT) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AgentAbortedError(f"Cancelled ({self._reason})")

    def __repr__(self) -> str:
        state = f"cancelled:{self._reason}" if self.cancelled else "active"
        return f"CancellationToken({state})"


class SteeringQueue:
    """Buffers steering and follow-up messages for one agent loop."""

    def __init__(self) -> None:
        self._steering: asyncio.Queue[str] = asyncio.Queue()
        self._followups: asyncio.Queue[str] = asyncio.Queue()
        self._abort_requested = False
        self._token: CancellationToken | None = None

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    def steer(self, message: str) -> None:
        """
        Interrupt the in-flight turn and redirect it with ``message``.

        The current model stream and any running tools are cancelled; the
        loop appends ``message`` as a user message and asks the model again.
        """
        self._steering.put_nowait(message)
        if self._token is not None:
            self._token.cancel(STEERING)
        logger.debug("Steering queued (%d pending)", self._steering.qsize())

    def follow_up(self, message: str) -> None:
        """
        Queue ``message`` for after the loop completes naturally.

        Follow-ups are consumed one at a time, in submission order, each
        time the loop would otherwise stop.
        """
        self._followups.put_nowait(message)

    def abort(self) -> None:
        """Cancel the in-flight turn and stop the loop."""
        self._abort_requested = True
        if self._token is not None:
            self._token.cancel(ABORT)

    # ------------------------------------------------------------------
    # Loop-facing API
    # ------------------------------------------------------------------

    @property
    def abort_requested(self) -> bool:
        return self._abort_requested

    def reset_abort(self) -> None:
        self._abort_requested = False

    def new_token(self) -> CancellationToken:
        """Create and bind the cancellation token for the next turn."""
        token = CancellationToken()
        if self._abort_requested:
            token.cancel(ABORT)
        self._token = token
        return token

    def release_token(self) -> None:
        self._token = None

    @property
    def has_steering(self) -> bool:
        return not self._steering.empty()

    @property
    def pending_follow_ups(self) -> int:
        return self._followups.qsize()

    def drain_steering(self) -> list[str]:
        """Take every queued steering message, oldest first."""
        messages: list[str] = []
        while True:
            try:
                messages.append(self._steering.get_nowait())
            except asyncio.QueueEmpty:
                return messages

    def pop_follow_up(self) -> str | None:
        """Non-blocking take of the oldest follow-up."""
        try:
            return self._followups.get_nowait()
        except asyncio.QueueEmpty:
            return None
