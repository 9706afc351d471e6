from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ProtectedAction(ABC):
    """An operation that may only run after out-of-band approval.

    The engine never inspects the payload. It asks the action to snapshot it,
    describe it to the approver, and finally apply it once approved.
    """

    name: str = "action"

    @abstractmethod
    def snapshot(self, user_id: str) -> dict[str, Any]:
        """Capture what is about to be authorized for the user."""

    @abstractmethod
    def validate(self, payload: dict[str, Any]) -> None:
        """Raise EmptyPayload when there is nothing worth authorizing."""

    @abstractmethod
    def describe(self, payload: dict[str, Any]) -> str:
        """Deterministic binding message for the approver."""

    @abstractmethod
    def apply(self, user_id: str, payload: dict[str, Any], request_id: str) -> dict[str, Any]:
        """Execute the approved payload. Must be safe to repeat for the same request_id."""
