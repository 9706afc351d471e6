from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Literal

from backchannel.core.errors import AlreadyTerminal, Forbidden, RequestNotFound
from backchannel.core.models.authorization import (
    AuthorizationRequest,
    AuthorizationState,
    can_transition,
    utcnow,
)
from backchannel.core.models.checkout import Cart, CartItem

Clock = Callable[[], datetime]


def _completion_in_flight(record: AuthorizationRequest) -> bool:
    """Approved and claimed, but the effect's outcome is not recorded yet."""
    return (
        record.state is AuthorizationState.APPROVED
        and record.completion_claimed
        and record.result is None
        and record.error is None
    )


class AuthorizationRequestStore(ABC):
    """Abstract persistence for pending authorization requests.

    Reads apply expiry lazily: a pending request past ``expires_at`` is returned
    as expired whether or not a sweep has run. ``transition`` and
    ``claim_completion`` must be atomic with respect to concurrent callers.
    """

    @abstractmethod
    def create(
        self,
        owner_user_id: str,
        payload: dict[str, Any],
        binding_message: str,
        ttl_seconds: float,
        channel: Literal["push", "popup"] = "push",
    ) -> AuthorizationRequest:
        """Persist a new pending request."""

    @abstractmethod
    def get(self, request_id: str) -> AuthorizationRequest:
        """Fetch a request, raising RequestNotFound when unknown or deleted."""

    @abstractmethod
    def transition(
        self, request_id: str, owner_user_id: str, new_state: AuthorizationState
    ) -> AuthorizationRequest:
        """Move a pending request to a terminal state on behalf of its owner."""

    @abstractmethod
    def claim_completion(self, request_id: str) -> bool:
        """Claim the right to apply the approved effect. True for exactly one caller."""

    @abstractmethod
    def record_result(
        self,
        request_id: str,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> AuthorizationRequest:
        """Attach the outcome of the applied effect."""

    @abstractmethod
    def delete(self, request_id: str) -> bool:
        """Remove a request. Returns False if it was already gone."""

    @abstractmethod
    def list_for_user(self, owner_user_id: str) -> list[AuthorizationRequest]:
        """Return the owner's live pending requests, newest first."""

    @abstractmethod
    def purge_expired(self, grace_seconds: float = 0.0) -> int:
        """Delete requests expired for longer than grace_seconds. Returns count deleted.

        Requests whose approved effect is still being applied are kept.
        """


class InMemoryAuthorizationRequestStore(AuthorizationRequestStore):
    def __init__(self, clock: Clock = utcnow) -> None:
        self._requests: dict[str, AuthorizationRequest] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _require(self, request_id: str) -> AuthorizationRequest:
        record = self._requests.get(request_id)
        if record is None:
            raise RequestNotFound(request_id)
        return record

    def create(
        self,
        owner_user_id: str,
        payload: dict[str, Any],
        binding_message: str,
        ttl_seconds: float,
        channel: Literal["push", "popup"] = "push",
    ) -> AuthorizationRequest:
        record = AuthorizationRequest.create(
            owner_user_id=owner_user_id,
            payload=payload,
            binding_message=binding_message,
            ttl_seconds=ttl_seconds,
            channel=channel,
            now=self._clock(),
        )
        with self._lock:
            self._requests[record.request_id] = record
        return record.model_copy(deep=True)

    def get(self, request_id: str) -> AuthorizationRequest:
        with self._lock:
            return self._require(request_id).view(self._clock())

    def transition(
        self, request_id: str, owner_user_id: str, new_state: AuthorizationState
    ) -> AuthorizationRequest:
        with self._lock:
            record = self._require(request_id)
            if record.owner_user_id != owner_user_id:
                raise Forbidden(request_id)
            now = self._clock()
            current = record.effective_state(now)
            if current is not record.state:
                record.state = current
            if not can_transition(current, new_state):
                raise AlreadyTerminal(request_id, current)
            record.state = new_state
            record.decided_at = now
            record.decided_by = owner_user_id
            return record.model_copy(deep=True)

    def claim_completion(self, request_id: str) -> bool:
        with self._lock:
            record = self._require(request_id)
            if record.state is not AuthorizationState.APPROVED or record.completion_claimed:
                return False
            record.completion_claimed = True
            return True

    def record_result(
        self,
        request_id: str,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> AuthorizationRequest:
        with self._lock:
            record = self._require(request_id)
            record.result = result
            record.error = error
            return record.model_copy(deep=True)

    def delete(self, request_id: str) -> bool:
        with self._lock:
            return self._requests.pop(request_id, None) is not None

    def list_for_user(self, owner_user_id: str) -> list[AuthorizationRequest]:
        with self._lock:
            now = self._clock()
            requests = [
                record.view(now)
                for record in self._requests.values()
                if record.owner_user_id == owner_user_id
                and record.effective_state(now) is AuthorizationState.PENDING
            ]
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    def purge_expired(self, grace_seconds: float = 0.0) -> int:
        cutoff = self._clock() - timedelta(seconds=grace_seconds)
        with self._lock:
            stale = [
                request_id
                for request_id, record in self._requests.items()
                if record.expires_at <= cutoff and not _completion_in_flight(record)
            ]
            for request_id in stale:
                del self._requests[request_id]
        return len(stale)


class CartStore(ABC):
    """Abstract persistence for shopping carts keyed by user."""

    @abstractmethod
    def get(self, user_id: str) -> Cart:
        """Fetch a user's cart, empty if none exists."""

    @abstractmethod
    def put(self, cart: Cart) -> None:
        """Replace a user's cart."""

    @abstractmethod
    def clear(self, user_id: str) -> bool:
        """Empty a user's cart. Returns False if the user had no cart."""

    @abstractmethod
    def remove_items(self, user_id: str, quantities: dict[str, int]) -> bool:
        """Take the given quantities out of a user's cart, dropping lines that run out.

        Items added after the quantities were captured are kept. Returns False if
        the user had no cart.
        """


class InMemoryCartStore(CartStore):
    def __init__(self) -> None:
        self._carts: dict[str, Cart] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Cart:
        with self._lock:
            cart = self._carts.get(user_id)
            return cart.model_copy(deep=True) if cart else Cart(user_id=user_id)

    def put(self, cart: Cart) -> None:
        with self._lock:
            self._carts[cart.user_id] = cart.model_copy(deep=True)

    def clear(self, user_id: str) -> bool:
        with self._lock:
            cart = self._carts.get(user_id)
            if cart is None:
                return False
            cart.items = []
            return True

    def remove_items(self, user_id: str, quantities: dict[str, int]) -> bool:
        with self._lock:
            cart = self._carts.get(user_id)
            if cart is None:
                return False
            remaining = []
            for item in cart.items:
                left = item.quantity - quantities.get(item.product_id, 0)
                if left > 0:
                    remaining.append(CartItem(product_id=item.product_id, quantity=left))
            cart.items = remaining
            return True
