from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable

from backchannel.runtime.events import AuthorizationEvent
from backchannel.runtime.poller import CompletionPoller, PollOutcome

logger = logging.getLogger(__name__)

Operation = Callable[["StreamingResponseController"], Awaitable[AuthorizationEvent]]


class StreamingResponseController:
    """Caller-facing event channel kept open across an asynchronous wait.

    Emits any number of progress events, then exactly one terminal event, then
    closes. While an operation is running the channel cannot be closed from the
    outside; the operation's own completion (or the hard timeout) closes it.
    """

    def __init__(
        self,
        request_id: str | None = None,
        owner_user_id: str | None = None,
        hard_timeout: float | None = None,
        keepalive_seconds: float = 15.0,
    ) -> None:
        self.request_id = request_id
        self.owner_user_id = owner_user_id
        self.hard_timeout = hard_timeout
        self.keepalive_seconds = keepalive_seconds
        self.terminal_event: AuthorizationEvent | None = None
        self._queue: asyncio.Queue[AuthorizationEvent | None] = asyncio.Queue()
        self._closed = False
        self._pending = False
        self._task: asyncio.Task[None] | None = None

    @property
    def has_pending_operation(self) -> bool:
        return self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: AuthorizationEvent) -> None:
        if event.is_terminal:
            raise ValueError("terminal events are delivered by close()")
        if self._closed:
            logger.debug(
                "Dropping event on closed stream", extra={"request_id": self.request_id}
            )
            return
        self._queue.put_nowait(event)

    def close(self, terminal: AuthorizationEvent) -> bool:
        """Send the terminal event and end the stream. Returns False if already closed."""
        if self._closed:
            return False
        if self._pending:
            raise RuntimeError("stream has a pending operation and cannot be closed yet")
        self._closed = True
        self.terminal_event = terminal
        self._queue.put_nowait(terminal)
        self._queue.put_nowait(None)
        return True

    def start(self, operation: Operation) -> asyncio.Task[None]:
        if self._task is not None:
            raise RuntimeError("stream operation already started")
        if self._closed:
            raise RuntimeError("stream already closed")
        self._pending = True
        self._task = asyncio.create_task(self._drive(operation))
        return self._task

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    def _terminal(self, status: str, message: str, **payload) -> AuthorizationEvent:
        return AuthorizationEvent(
            event_type="authorization.terminal",
            status=status,
            request_id=self.request_id,
            owner_user_id=self.owner_user_id,
            payload=payload,
            message=message,
        )

    async def _drive(self, operation: Operation) -> None:
        terminal: AuthorizationEvent | None = None
        try:
            if self.hard_timeout is None:
                terminal = await operation(self)
            else:
                async with asyncio.timeout(self.hard_timeout):
                    terminal = await operation(self)
        except TimeoutError:
            terminal = self._terminal(
                PollOutcome.TIMED_OUT.value,
                "Stopped waiting for approval. The request may still be resolved.",
                reason="stream_timeout",
            )
        except asyncio.CancelledError:
            terminal = self._terminal("cancelled", "Stream closed before a decision arrived.")
            raise
        except Exception as exc:
            logger.exception("Streaming operation failed", extra={"request_id": self.request_id})
            terminal = self._terminal(
                PollOutcome.FAILED.value, "Authorization could not be completed.", error=str(exc)
            )
        finally:
            self._pending = False
            if terminal is None:
                terminal = self._terminal(
                    PollOutcome.FAILED.value, "Authorization could not be completed."
                )
            self.close(terminal)

    async def stream(self) -> AsyncGenerator[bytes, None]:
        """Server-sent event encoding of the channel, with keepalive comments."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        self._queue.get(), timeout=self.keepalive_seconds
                    )
                except TimeoutError:
                    yield b": keepalive\n\n"
                    continue
                if event is None:
                    break
                payload = json.dumps(event.to_payload())
                yield f"data: {payload}\n\n".encode()
        finally:
            # Disconnect only stops the wait; the request's own TTL still applies.
            if self._task is not None and not self._task.done():
                self._task.cancel()


def await_completion(
    poller: CompletionPoller,
    request_id: str,
    owner_user_id: str | None = None,
    interval: float | None = None,
    max_attempts: int | None = None,
) -> Operation:
    """Operation that polls the request to a terminal outcome."""

    async def _operation(controller: StreamingResponseController) -> AuthorizationEvent:
        result = await poller.run(
            request_id,
            interval=interval,
            max_attempts=max_attempts,
            emit=controller.emit,
            owner_user_id=owner_user_id,
        )
        return result.to_event(owner_user_id=owner_user_id)

    return _operation
