from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from backchannel.core.errors import AlreadyTerminal, Forbidden
from backchannel.core.models.authorization import (
    AuthorizationRequest,
    AuthorizationState,
    decision_state,
)
from backchannel.core.stores import AuthorizationRequestStore
from backchannel.runtime.events import (
    AuthorizationEvent,
    AuthorizationEventBus,
    publish_transition,
)

logger = logging.getLogger(__name__)


class ApprovalChannel(ABC):
    """Approver-facing surface that resolves a pending request.

    Subclasses only differ in how a new request is announced to the approver;
    every channel resolves requests through ``decide``.
    """

    name: str = "channel"

    def __init__(self, store: AuthorizationRequestStore, event_bus: AuthorizationEventBus) -> None:
        self.store = store
        self.event_bus = event_bus

    @abstractmethod
    def announce(self, request: AuthorizationRequest) -> str | None:
        """Notify the approver. Returns a URL the initiator should open, if any."""

    def decide(
        self, request_id: str, deciding_user_id: str, approve: bool
    ) -> AuthorizationRequest:
        target = decision_state(approve)
        try:
            updated = self.store.transition(request_id, deciding_user_id, target)
        except AlreadyTerminal as exc:
            if exc.state is target:
                logger.info(
                    "Repeated %s decision ignored",
                    target.value,
                    extra={"request_id": request_id, "actor": deciding_user_id},
                )
                return self.store.get(request_id)
            raise
        publish_transition(
            self.event_bus,
            request_id=request_id,
            owner_user_id=updated.owner_user_id,
            old_state=AuthorizationState.PENDING.value,
            new_state=target.value,
            actor=deciding_user_id,
            channel=self.name,
        )
        return updated

    def prompt(self, request_id: str, user_id: str) -> AuthorizationRequest:
        """Load a request for display to its approver."""
        request = self.store.get(request_id)
        if request.owner_user_id != user_id:
            raise Forbidden(request_id)
        return request


class PushApprovalChannel(ApprovalChannel):
    """Delivers the prompt to the approver's event stream (push notification)."""

    name = "push"

    def announce(self, request: AuthorizationRequest) -> str | None:
        self.event_bus.publish(
            AuthorizationEvent(
                event_type="authorization.prompt",
                status=request.state.value,
                request_id=request.request_id,
                owner_user_id=request.owner_user_id,
                payload={"expires_at": request.expires_at.isoformat()},
                message=request.binding_message,
            )
        )
        return None


class PopupApprovalChannel(ApprovalChannel):
    """Hands the initiator a link to open in an authorization popup."""

    name = "popup"

    def __init__(
        self,
        store: AuthorizationRequestStore,
        event_bus: AuthorizationEventBus,
        base_url: str,
    ) -> None:
        super().__init__(store, event_bus)
        self.base_url = base_url.rstrip("/")

    def announce(self, request: AuthorizationRequest) -> str | None:
        return f"{self.base_url}/authorizations/{request.request_id}/prompt"
