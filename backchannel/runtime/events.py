from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationEvent:
    event_type: str
    status: str
    request_id: str | None = None
    owner_user_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    event_id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.event_type == "authorization.terminal"

    def to_payload(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "status": self.status,
            "request_id": self.request_id,
            "payload": self.payload,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _Subscriber:
    queue: asyncio.Queue[AuthorizationEvent | None]
    loop: asyncio.AbstractEventLoop
    owner_user_id: str | None

    def wants(self, event: AuthorizationEvent) -> bool:
        return self.owner_user_id is None or event.owner_user_id == self.owner_user_id

    def offer(self, event: AuthorizationEvent | None) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            with suppress(asyncio.QueueEmpty):
                self.queue.get_nowait()
            with suppress(asyncio.QueueFull):
                self.queue.put_nowait(event)


class AuthorizationEventBus:
    """Fan-out of authorization events to approver streams.

    Publishers may run on worker threads (sync endpoints) while subscribers
    live on the event loop, so delivery is marshalled onto each subscriber's loop.
    """

    def __init__(self, history_size: int = 200, queue_size: int = 200) -> None:
        self._history: deque[AuthorizationEvent] = deque(maxlen=history_size)
        self._subscribers: list[_Subscriber] = []
        self._lock = threading.Lock()
        self._queue_size = queue_size

    def publish(self, event: AuthorizationEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = [s for s in self._subscribers if s.wants(event)]

        for subscriber in subscribers:
            self._deliver(subscriber, event)

    def _deliver(self, subscriber: _Subscriber, event: AuthorizationEvent | None) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is subscriber.loop:
            subscriber.offer(event)
            return
        with suppress(RuntimeError):
            # Loop already closed: the subscriber is gone.
            subscriber.loop.call_soon_threadsafe(subscriber.offer, event)

    def subscribe_async(
        self, owner_user_id: str | None = None
    ) -> asyncio.Queue[AuthorizationEvent | None]:
        """Subscribe on the running loop, optionally only to one owner's events."""
        subscriber = _Subscriber(
            queue=asyncio.Queue(maxsize=self._queue_size),
            loop=asyncio.get_running_loop(),
            owner_user_id=owner_user_id,
        )
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber.queue

    def unsubscribe_async(self, queue: asyncio.Queue[AuthorizationEvent | None]) -> None:
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s.queue is not queue]

    def history(self, owner_user_id: str | None = None) -> Iterable[AuthorizationEvent]:
        with self._lock:
            return [
                event
                for event in self._history
                if owner_user_id is None or event.owner_user_id == owner_user_id
            ]

    def shutdown(self) -> None:
        """Wake every subscriber with the None sentinel."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            self._deliver(subscriber, None)


def publish_transition(
    bus: AuthorizationEventBus,
    request_id: str,
    owner_user_id: str,
    old_state: str | None,
    new_state: str,
    actor: str,
    **details: Any,
) -> AuthorizationEvent:
    """Record a state change on the bus and in the log."""
    event = AuthorizationEvent(
        event_type="authorization.transition",
        status=new_state,
        request_id=request_id,
        owner_user_id=owner_user_id,
        payload={"old_state": old_state, "new_state": new_state, "actor": actor, **details},
    )
    logger.info(
        "Authorization %s -> %s",
        old_state,
        new_state,
        extra={
            "request_id": request_id,
            "old_state": old_state,
            "new_state": new_state,
            "actor": actor,
        },
    )
    bus.publish(event)
    return event


authorization_event_bus = AuthorizationEventBus()
