"""Where the completion poller reads authorization state from."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import anyio
import httpx

from backchannel.core.errors import PollRejected, RequestNotFound, TransientPollError
from backchannel.core.models.authorization import AuthorizationRequest, AuthorizationState
from backchannel.core.stores import AuthorizationRequestStore

logger = logging.getLogger(__name__)

# CIBA token endpoint error codes that describe the request rather than the poll.
CIBA_STATE_CODES: dict[str, AuthorizationState] = {
    "authorization_pending": AuthorizationState.PENDING,
    "access_denied": AuthorizationState.DENIED,
    "expired_token": AuthorizationState.EXPIRED,
}
SLOW_DOWN = "slow_down"
COMPLETION_FAILED = "completion_failed"


@dataclass(frozen=True)
class PollObservation:
    """One answer from a status source."""

    state: AuthorizationState | None
    slow_down: bool = False
    request: AuthorizationRequest | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def slowed(cls) -> PollObservation:
        return cls(state=None, slow_down=True)


class StatusSource(ABC):
    @abstractmethod
    async def observe(self, request_id: str) -> PollObservation:
        """Read the request's current state.

        Raises RequestNotFound when the request is gone, TransientPollError when
        the source could not be reached and PollRejected when it refused the poll.
        """


class StoreStatusSource(StatusSource):
    """Reads directly from the shared authorization store."""

    def __init__(self, store: AuthorizationRequestStore) -> None:
        self.store = store

    async def observe(self, request_id: str) -> PollObservation:
        request = await anyio.to_thread.run_sync(self.store.get, request_id)
        return PollObservation(
            state=request.state,
            request=request,
            result=request.result,
            error=request.error,
        )


class HttpStatusSource(StatusSource):
    """Polls a remote status endpoint speaking CIBA token-endpoint error codes."""

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout = timeout
        self._transport = transport

    async def observe(self, request_id: str) -> PollObservation:
        url = f"{self.base_url}/authorizations/{request_id}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, headers=self.headers, transport=self._transport
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise TransientPollError(f"status poll failed: {exc}") from exc
        return self._parse(request_id, response)

    def _parse(self, request_id: str, response: httpx.Response) -> PollObservation:
        if response.status_code >= 500:
            raise TransientPollError(f"status endpoint returned {response.status_code}")
        if response.status_code == 429:
            return PollObservation.slowed()
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientPollError("status endpoint returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise TransientPollError("status endpoint returned an unexpected body")

        error = body.get("error")
        detail = body.get("detail")
        if isinstance(detail, dict):
            error = error or detail.get("code")

        if response.status_code == 404 or error == "not_found":
            raise RequestNotFound(request_id)
        if error == SLOW_DOWN:
            return PollObservation.slowed()
        if error in CIBA_STATE_CODES:
            return PollObservation(state=CIBA_STATE_CODES[error])
        if error == COMPLETION_FAILED:
            return PollObservation(
                state=AuthorizationState.APPROVED,
                error=body.get("error_description") or error,
            )
        if response.is_success and body.get("access_token"):
            # Plain CIBA providers signal approval by issuing a token.
            return PollObservation(state=AuthorizationState.APPROVED, result=body)
        if response.is_success and body.get("state"):
            try:
                state = AuthorizationState(body["state"])
            except ValueError as exc:
                raise PollRejected("invalid_response", f"unknown state {body['state']!r}") from exc
            return PollObservation(state=state, result=body.get("result"))

        description = body.get("error_description") or body.get("message")
        code = error or ("unauthorized_client" if response.status_code in (401, 403) else "")
        raise PollRejected(code or f"http_{response.status_code}", description)
