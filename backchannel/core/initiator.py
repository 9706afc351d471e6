from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from backchannel.core.actions import ProtectedAction
from backchannel.core.approval import ApprovalChannel
from backchannel.core.errors import Unauthenticated
from backchannel.core.stores import AuthorizationRequestStore
from backchannel.runtime.events import (
    AuthorizationEvent,
    AuthorizationEventBus,
    publish_transition,
)

# Characters accepted in CIBA binding messages.
_BINDING_DISALLOWED = re.compile(r"[^A-Za-z0-9\s+\-_.,:#]")


def normalize_binding_message(message: str, max_length: int) -> str:
    cleaned = _BINDING_DISALLOWED.sub("", message)
    cleaned = " ".join(cleaned.split())
    return cleaned[:max_length].rstrip()


class AuthorizationTicket(BaseModel):
    """What the initiating caller needs to display a prompt and start polling."""

    request_id: str
    binding_message: str
    expires_at: datetime
    channel: Literal["push", "popup"]
    authorization_url: str | None = Field(
        default=None, description="Popup link for the approver, when the channel uses one"
    )


class BackchannelInitiator:
    """Creates authorization requests for a protected action."""

    def __init__(
        self,
        store: AuthorizationRequestStore,
        action: ProtectedAction,
        channel: ApprovalChannel,
        event_bus: AuthorizationEventBus,
        ttl_seconds: float = 300,
        binding_message_max_length: int = 64,
    ) -> None:
        self.store = store
        self.action = action
        self.channel = channel
        self.event_bus = event_bus
        self.ttl_seconds = ttl_seconds
        self.binding_message_max_length = binding_message_max_length

    def initiate(self, user_id: str, action_payload: dict[str, Any]) -> AuthorizationTicket:
        if not user_id:
            raise Unauthenticated()
        self.action.validate(action_payload)
        binding_message = normalize_binding_message(
            self.action.describe(action_payload), self.binding_message_max_length
        )
        request = self.store.create(
            owner_user_id=user_id,
            payload=action_payload,
            binding_message=binding_message,
            ttl_seconds=self.ttl_seconds,
            channel=self.channel.name,
        )
        publish_transition(
            self.event_bus,
            request_id=request.request_id,
            owner_user_id=user_id,
            old_state=None,
            new_state=request.state.value,
            actor=user_id,
            action=self.action.name,
        )
        authorization_url = self.channel.announce(request)
        self.event_bus.publish(
            AuthorizationEvent(
                event_type="authorization.created",
                status=request.state.value,
                request_id=request.request_id,
                owner_user_id=user_id,
                payload={
                    "channel": self.channel.name,
                    "expires_at": request.expires_at.isoformat(),
                },
                message=binding_message,
            )
        )
        return AuthorizationTicket(
            request_id=request.request_id,
            binding_message=binding_message,
            expires_at=request.expires_at,
            channel=self.channel.name,
            authorization_url=authorization_url,
        )

    def initiate_for(self, user_id: str) -> AuthorizationTicket:
        """Snapshot the user's current action payload and request approval for it."""
        if not user_id:
            raise Unauthenticated()
        return self.initiate(user_id, self.action.snapshot(user_id))
