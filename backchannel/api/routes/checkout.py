from __future__ import annotations

import anyio
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from backchannel.api.dependencies import (
    get_initiator,
    get_poller,
    http_error,
    require_identity,
)
from backchannel.api.middleware.auth import IdentityContext
from backchannel.config.settings import get_settings
from backchannel.core.errors import AuthorizationError
from backchannel.core.initiator import AuthorizationTicket, BackchannelInitiator
from backchannel.runtime.events import AuthorizationEvent
from backchannel.runtime.poller import CompletionPoller
from backchannel.runtime.streaming import StreamingResponseController, await_completion

router = APIRouter(prefix="/checkout", tags=["checkout"])
_INITIATOR = Depends(get_initiator)
_POLLER = Depends(get_poller)
_IDENTITY = Depends(require_identity)


@router.post("/authorize", response_model=AuthorizationTicket)
def authorize_checkout(
    initiator: BackchannelInitiator = _INITIATOR,
    identity: IdentityContext = _IDENTITY,
) -> AuthorizationTicket:
    try:
        return initiator.initiate_for(identity.user_id)
    except AuthorizationError as exc:
        raise http_error(exc) from exc


@router.post("/stream")
async def stream_checkout(
    initiator: BackchannelInitiator = _INITIATOR,
    poller: CompletionPoller = _POLLER,
    identity: IdentityContext = _IDENTITY,
) -> StreamingResponse:
    """Start a checkout authorization and stream its progress until it resolves."""
    try:
        ticket = await anyio.to_thread.run_sync(initiator.initiate_for, identity.user_id)
    except AuthorizationError as exc:
        raise http_error(exc) from exc

    settings = get_settings().authorization
    controller = StreamingResponseController(
        request_id=ticket.request_id,
        owner_user_id=identity.user_id,
        hard_timeout=settings.stream_timeout_seconds,
        keepalive_seconds=settings.stream_keepalive_seconds,
    )
    controller.emit(
        AuthorizationEvent(
            event_type="authorization.created",
            status="pending",
            request_id=ticket.request_id,
            owner_user_id=identity.user_id,
            payload=ticket.model_dump(mode="json"),
            message=ticket.binding_message,
        )
    )
    controller.start(await_completion(poller, ticket.request_id, owner_user_id=identity.user_id))
    return StreamingResponse(controller.stream(), media_type="text/event-stream")
