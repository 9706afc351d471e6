from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

import anyio
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backchannel.api.dependencies import (
    get_approval_channel,
    get_authorization_store,
    get_poll_guard,
    get_poller,
    http_error,
    require_identity,
)
from backchannel.api.middleware.auth import IdentityContext
from backchannel.api.middleware.rate_limit import PollIntervalGuard
from backchannel.core.approval import ApprovalChannel
from backchannel.core.errors import (
    AuthorizationError,
    Forbidden,
    RequestNotFound,
    TransientPollError,
)
from backchannel.core.models.authorization import AuthorizationRequest, AuthorizationState
from backchannel.core.stores import AuthorizationRequestStore
from backchannel.runtime.poller import CompletionPoller, PollOutcome, PollResult
from backchannel.runtime.sources import COMPLETION_FAILED, SLOW_DOWN


class DecisionRequest(BaseModel):
    decision: Literal["approve", "deny"]


class AuthorizationView(BaseModel):
    id: str
    state: AuthorizationState
    binding_message: str
    channel: str
    created_at: datetime
    expires_at: datetime
    decided_at: datetime | None = None

    @classmethod
    def from_request(cls, request: AuthorizationRequest) -> AuthorizationView:
        return cls(
            id=request.request_id,
            state=request.state,
            binding_message=request.binding_message,
            channel=request.channel,
            created_at=request.created_at,
            expires_at=request.expires_at,
            decided_at=request.decided_at,
        )


class AuthorizationStatus(BaseModel):
    """Poll answer. ``error`` carries CIBA token-endpoint codes."""

    id: str
    state: AuthorizationState
    error: str | None = None
    error_description: str | None = None
    next_poll_after: float | None = Field(default=None, description="Seconds until the next poll")
    result: dict[str, Any] | None = None


router = APIRouter(prefix="/authorizations", tags=["authorizations"])
_STORE = Depends(get_authorization_store)
_CHANNEL = Depends(get_approval_channel)
_POLLER = Depends(get_poller)
_POLL_GUARD = Depends(get_poll_guard)
_IDENTITY = Depends(require_identity)


def _status_from_result(result: PollResult) -> AuthorizationStatus:
    if result.outcome is PollOutcome.COMPLETED:
        return AuthorizationStatus(
            id=result.request_id, state=AuthorizationState.APPROVED, result=result.result
        )
    if result.outcome is PollOutcome.REJECTED:
        return AuthorizationStatus(
            id=result.request_id, state=AuthorizationState.DENIED, error="access_denied"
        )
    if result.outcome is PollOutcome.EXPIRED:
        return AuthorizationStatus(
            id=result.request_id, state=AuthorizationState.EXPIRED, error="expired_token"
        )
    return AuthorizationStatus(
        id=result.request_id,
        state=result.state or AuthorizationState.APPROVED,
        error=COMPLETION_FAILED,
        error_description=result.error,
    )


@router.get("/", response_model=list[AuthorizationView])
def list_pending(
    store: AuthorizationRequestStore = _STORE,
    identity: IdentityContext = _IDENTITY,
) -> list[AuthorizationView]:
    return [AuthorizationView.from_request(r) for r in store.list_for_user(identity.user_id)]


@router.get("/{request_id}", response_model=AuthorizationStatus)
async def poll_status(
    request_id: str,
    store: AuthorizationRequestStore = _STORE,
    poller: CompletionPoller = _POLLER,
    guard: PollIntervalGuard = _POLL_GUARD,
    identity: IdentityContext = _IDENTITY,
) -> AuthorizationStatus:
    """Report a request's state, completing the approved action on first observation."""
    interval = poller.config.interval
    try:
        request = await anyio.to_thread.run_sync(store.get, request_id)
        if request.owner_user_id != identity.user_id:
            raise Forbidden(request_id)
        if request.state is AuthorizationState.PENDING and not guard.allow(request_id):
            return AuthorizationStatus(
                id=request_id,
                state=request.state,
                error=SLOW_DOWN,
                next_poll_after=interval,
            )
        result = await poller.step(request_id)
    except AuthorizationError as exc:
        raise http_error(exc) from exc
    except TransientPollError as exc:
        raise HTTPException(
            status_code=503,
            detail={"code": "temporarily_unavailable", "message": str(exc)},
        ) from exc

    if result is None:
        return AuthorizationStatus(
            id=request_id,
            state=request.state,
            error="authorization_pending",
            next_poll_after=interval,
        )
    guard.forget(request_id)
    if result.outcome is PollOutcome.NOT_FOUND:
        raise http_error(RequestNotFound(request_id))
    return _status_from_result(result)


@router.get("/{request_id}/prompt", response_model=AuthorizationView)
def show_prompt(
    request_id: str,
    channel: ApprovalChannel = _CHANNEL,
    identity: IdentityContext = _IDENTITY,
) -> AuthorizationView:
    try:
        request = channel.prompt(request_id, identity.user_id)
    except AuthorizationError as exc:
        raise http_error(exc) from exc
    return AuthorizationView.from_request(request)


@router.post("/{request_id}/decision", response_model=AuthorizationView)
def decide(
    request_id: str,
    body: DecisionRequest,
    channel: ApprovalChannel = _CHANNEL,
    identity: IdentityContext = _IDENTITY,
) -> AuthorizationView:
    try:
        request = channel.decide(request_id, identity.user_id, approve=body.decision == "approve")
    except AuthorizationError as exc:
        raise http_error(exc) from exc
    return AuthorizationView.from_request(request)
