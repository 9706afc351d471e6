from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from backchannel.api.dependencies import get_event_bus, require_identity
from backchannel.api.middleware.auth import IdentityContext
from backchannel.config.settings import get_settings
from backchannel.runtime.events import AuthorizationEventBus

router = APIRouter(prefix="/authorizations", tags=["authorizations"])
_EVENT_BUS = Depends(get_event_bus)
_IDENTITY = Depends(require_identity)


async def approver_stream(
    bus: AuthorizationEventBus,
    user_id: str,
    keepalive_seconds: float = 15.0,
    replay: bool = True,
) -> AsyncGenerator[bytes, None]:
    """Push prompts and transitions for one user's requests as server-sent events."""
    subscriber = bus.subscribe_async(owner_user_id=user_id)
    try:
        if replay:
            for event in bus.history(owner_user_id=user_id):
                yield f"data: {json.dumps(event.to_payload())}\n\n".encode()

        while True:
            try:
                event = await asyncio.wait_for(subscriber.get(), timeout=keepalive_seconds)
            except TimeoutError:
                yield b": keepalive\n\n"
                continue
            # None is the shutdown sentinel
            if event is None:
                break
            yield f"data: {json.dumps(event.to_payload())}\n\n".encode()
    except asyncio.CancelledError:
        pass
    finally:
        bus.unsubscribe_async(subscriber)


@router.get("/events")
async def approver_events(
    replay: bool = True,
    bus: AuthorizationEventBus = _EVENT_BUS,
    identity: IdentityContext = _IDENTITY,
) -> StreamingResponse:
    keepalive = get_settings().authorization.stream_keepalive_seconds
    return StreamingResponse(
        approver_stream(bus, identity.user_id, keepalive_seconds=keepalive, replay=replay),
        media_type="text/event-stream",
    )
