from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class AuthorizationState(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not AuthorizationState.PENDING


# Only a pending request may change state, and only once.
_TRANSITIONS: dict[AuthorizationState, frozenset[AuthorizationState]] = {
    AuthorizationState.PENDING: frozenset(
        {AuthorizationState.APPROVED, AuthorizationState.DENIED, AuthorizationState.EXPIRED}
    ),
}


def can_transition(current: AuthorizationState, target: AuthorizationState) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


def decision_state(approve: bool) -> AuthorizationState:
    return AuthorizationState.APPROVED if approve else AuthorizationState.DENIED


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_request_id() -> str:
    # The id doubles as a capability for status polling, so it must be unguessable.
    return secrets.token_urlsafe(32)


class AuthorizationRequest(BaseModel):
    """Out-of-band authorization for a single protected action."""

    request_id: str = Field(default_factory=new_request_id)
    owner_user_id: str = Field(description="User who must approve or deny the request")
    payload: dict[str, Any] = Field(
        default_factory=dict, description="Snapshot of the action captured at creation"
    )
    binding_message: str = Field(description="Human-readable summary shown to the approver")
    state: AuthorizationState = Field(default=AuthorizationState.PENDING)
    channel: Literal["push", "popup"] = Field(default="push")
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    decided_at: datetime | None = None
    decided_by: str | None = None
    completion_claimed: bool = Field(
        default=False, description="Set once, by the poller that applies the effect"
    )
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def create(
        cls,
        owner_user_id: str,
        payload: dict[str, Any],
        binding_message: str,
        ttl_seconds: float,
        channel: Literal["push", "popup"] = "push",
        now: datetime | None = None,
    ) -> AuthorizationRequest:
        created_at = now or utcnow()
        return cls(
            owner_user_id=owner_user_id,
            payload=payload,
            binding_message=binding_message,
            channel=channel,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def effective_state(self, now: datetime | None = None) -> AuthorizationState:
        """State as seen at ``now``: a pending request past its expiry reads as expired."""
        if self.state is AuthorizationState.PENDING and self.is_expired(now):
            return AuthorizationState.EXPIRED
        return self.state

    def view(self, now: datetime | None = None) -> AuthorizationRequest:
        state = self.effective_state(now)
        if state is self.state:
            return self.model_copy(deep=True)
        return self.model_copy(update={"state": state}, deep=True)

    @property
    def is_completed(self) -> bool:
        return self.completion_claimed and self.result is not None
