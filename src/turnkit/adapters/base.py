"""
Base provider adapter interface.

A provider adapter turns one model request into the canonical
:class:`~turnkit.events.StreamEvent` sequence. Subclasses only implement
:meth:`ProviderAdapter._stream_events` (talk to the SDK, yield canonical
events, raise on failure); the base class adds credential resolution,
retry with backoff, error classification, and cancellation.

Example implementation for a custom backend:

    class MyAdapter(ProviderAdapter):
        name = "mine"

        async def _stream_events(self, request, api_key):
            async for chunk in my_client(api_key).stream(...):
                yield StreamEvent.text_delta(chunk.text)
            yield StreamEvent.stop("end_turn")
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypedDict

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from turnkit.config import RetryPolicy
from turnkit.credentials import CredentialResolver, EnvCredentialResolver
from turnkit.errors import AgentAbortedError, ProviderError
from turnkit.events import StreamEvent
from turnkit.logging import get_logger
from turnkit.model_registry import ThinkingLevel
from turnkit.models import Message
from turnkit.steering import CancellationToken

logger = get_logger("adapters")

Sleep = Callable[[float], Awaitable[None]]


class ToolDefinition(TypedDict):
    """Provider-neutral tool definition."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON schema for parameters


@dataclass
class TurnRequest:
    """Everything an adapter needs for one model request."""

    messages: list[Message]
    system_prompt: str | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    thinking_level: ThinkingLevel = "off"


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _retry_after(error: Exception) -> float | None:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def classify_status(status_code: int, message: str = "") -> str:
    """Map an HTTP status to a :class:`ProviderError` kind."""
    if status_code == 429:
        return "rate_limit"
    if status_code == 408:
        return "timeout"
    if status_code >= 500:
        return "server"
    if status_code in (401, 403):
        return "auth"
    if status_code == 404:
        return "not_found"
    if status_code in (400, 413, 422):
        lowered = message.lower()
        if "context" in lowered and ("length" in lowered or "window" in lowered):
            return "context_length"
        if "too long" in lowered or "too many tokens" in lowered:
            return "context_length"
        return "bad_request"
    return "unknown"


def classify_error(error: Exception) -> ProviderError:
    """
    Convert an SDK or transport exception into a :class:`ProviderError`.

    Works on duck-typed ``status_code``/``response.headers`` so it covers the
    OpenAI and Anthropic SDK error hierarchies as well as raw httpx errors.
    """
    if isinstance(error, ProviderError):
        return error
    message = str(error) or type(error).__name__
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return ProviderError(
            message,
            kind=classify_status(status_code, message),  # type: ignore[arg-type]
            status_code=status_code,
            retry_after=_retry_after(error),
        )
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ProviderError(message, kind="timeout")
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ProviderError(message, kind="connection")
    return ProviderError(message, kind="unknown")


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """
    Abstract base class for model backend adapters.

    ``open_turn`` always yields a well-formed sequence ending in exactly one
    ``stop`` or ``error`` event; it never raises for backend failures.
    """

    name: str = ""
    requires_credential: bool = True

    def __init__(
        self,
        model: str = "",
        credentials: CredentialResolver | None = None,
        retry: RetryPolicy | None = None,
        request_timeout: float = 120.0,
        base_url: str | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        self.model = model
        self.credentials = credentials or EnvCredentialResolver()
        self.retry = retry or RetryPolicy()
        self.request_timeout = request_timeout
        self.base_url = base_url
        self._sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _stream_events(
        self, request: TurnRequest, api_key: str | None
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Yield canonical events for one attempt.

        Must end with a ``stop`` event; raise (any exception) on failure.
        """
        ...

    def classify_error(self, error: Exception) -> ProviderError:
        """Provider-specific error mapping. Defaults to :func:`classify_error`."""
        return classify_error(error)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def open_turn(
        self, request: TurnRequest, cancel: CancellationToken
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one model response as canonical events.

        Retryable failures are retried with backoff only until the first
        event of an attempt is available; once anything has been yielded a
        failure becomes a terminal ``error`` event. Tripping ``cancel``
        closes the SDK stream and ends the sequence with ``stop(aborted)``.
        """
        try:
            api_key = self._resolve_credential()
            stream, first = await self._connect(request, api_key, cancel)
        except AgentAbortedError:
            yield StreamEvent.stop("aborted")
            return
        except ProviderError as e:
            logger.warning("%s request failed: %s", self.name or "provider", e)
            yield StreamEvent.error_event(e.to_payload())
            return

        try:
            event: StreamEvent | None = first
            while event is not None:
                yield event
                if event.is_terminal:
                    return
                event = await self._next_event(stream, cancel)
            error = ProviderError("Stream ended without a stop event", kind="connection")
            yield StreamEvent.error_event(error.to_payload())
        except AgentAbortedError:
            yield StreamEvent.stop("aborted")
        except ProviderError as e:
            logger.warning("%s stream failed: %s", self.name or "provider", e)
            yield StreamEvent.error_event(e.to_payload())
        finally:
            await stream.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_credential(self) -> str | None:
        api_key = self.credentials.resolve(self.name)
        if not api_key and self.requires_credential:
            raise ProviderError(
                f"No credential available for provider {self.name!r}",
                kind="auth",
                retryable=False,
            )
        return api_key

    def _retrying(self) -> AsyncRetrying:
        backoff = wait_exponential(
            multiplier=self.retry.base_delay,
            exp_base=self.retry.multiplier,
            max=self.retry.max_delay,
        )

        def wait(retry_state: Any) -> float:
            delay = backoff(retry_state)
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            if isinstance(error, ProviderError) and error.retry_after is not None:
                delay = max(delay, error.retry_after)
            return delay

        def before_sleep(retry_state: Any) -> None:
            logger.warning(
                "%s: retryable error (attempt %d/%d), waiting %.1fs: %s",
                self.name or "provider",
                retry_state.attempt_number,
                self.retry.max_attempts,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                retry_state.outcome.exception() if retry_state.outcome else None,
            )

        return AsyncRetrying(
            reraise=True,
            sleep=self._sleep,
            stop=stop_after_attempt(max(1, self.retry.max_attempts)),
            wait=wait,
            retry=retry_if_exception(
                lambda e: isinstance(e, ProviderError) and e.retryable
            ),
            before_sleep=before_sleep,
        )

    async def _connect(
        self, request: TurnRequest, api_key: str | None, cancel: CancellationToken
    ) -> tuple[AsyncGenerator[StreamEvent, None], StreamEvent]:
        """Open the stream and fetch its first event, retrying transient failures."""
        async for attempt in self._retrying():
            with attempt:
                cancel.raise_if_cancelled()
                stream = self._stream_events(request, api_key)
                try:
                    first = await self._next_event(stream, cancel)
                except BaseException:
                    await stream.aclose()
                    raise
                if first is None:
                    await stream.aclose()
                    raise ProviderError("Empty response stream", kind="server")
                return stream, first
        raise AssertionError("unreachable")

    async def _next_event(
        self, stream: AsyncGenerator[StreamEvent, None], cancel: CancellationToken
    ) -> StreamEvent | None:
        """
        Next event from ``stream``, or ``None`` when it is exhausted.

        Raises:
            AgentAbortedError: If ``cancel`` trips first.
            ProviderError: For any failure raised by the stream.
        """
        cancel.raise_if_cancelled()
        next_task = asyncio.ensure_future(stream.__anext__())
        cancel_task = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
        if not next_task.done():
            next_task.cancel()
            await asyncio.gather(next_task, return_exceptions=True)
            cancel.raise_if_cancelled()
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None
        except ProviderError:
            raise
        except Exception as e:
            raise self.classify_error(e) from e
