"""Completion poller: waits for an authorization decision and applies it once.

Caller-side lifecycle::

    pending -> approved -> completed
    pending -> denied   -> rejected
    pending -> expired  -> expired
    pending -> (attempt budget exhausted) -> timed_out

``failed`` covers operational problems (source unreachable or refusing the
poll, effect raised) and ``not_found`` a request that was already handled and
removed by another poller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import anyio

from backchannel.config.settings import AuthorizationSettings
from backchannel.core.actions import ProtectedAction
from backchannel.core.errors import (
    PollRejected,
    RequestNotFound,
    StoreUnavailable,
    TransientPollError,
)
from backchannel.core.models.authorization import AuthorizationRequest, AuthorizationState
from backchannel.core.stores import AuthorizationRequestStore
from backchannel.runtime.events import AuthorizationEvent
from backchannel.runtime.sources import PollObservation, StatusSource

logger = logging.getLogger(__name__)

EventSink = Callable[[AuthorizationEvent], None]
Sleep = Callable[[float], Awaitable[Any]]


class PollOutcome(StrEnum):
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    NOT_FOUND = "not_found"

    @property
    def is_success(self) -> bool:
        return self is PollOutcome.COMPLETED

    @property
    def is_rejection(self) -> bool:
        """Denied and expired requests both end as rejections of the action."""
        return self in (PollOutcome.REJECTED, PollOutcome.EXPIRED)


_MESSAGES = {
    PollOutcome.COMPLETED: "Authorization approved and the action completed.",
    PollOutcome.REJECTED: "Authorization was denied. Nothing was changed.",
    PollOutcome.EXPIRED: "Authorization request expired before it was approved.",
    PollOutcome.TIMED_OUT: "Stopped waiting for approval. The request may still be resolved.",
    PollOutcome.FAILED: "Authorization could not be completed.",
    PollOutcome.NOT_FOUND: "This authorization request was already handled.",
}


@dataclass
class PollResult:
    outcome: PollOutcome
    request_id: str
    attempts: int = 0
    state: AuthorizationState | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    @property
    def message(self) -> str:
        return _MESSAGES[self.outcome]

    def to_event(self, owner_user_id: str | None = None) -> AuthorizationEvent:
        payload: dict[str, Any] = {"attempts": self.attempts, "rejected": self.outcome.is_rejection}
        if self.state is not None:
            payload["state"] = self.state.value
        if self.result is not None:
            payload["result"] = self.result
        if self.error:
            payload["error"] = self.error
        return AuthorizationEvent(
            event_type="authorization.terminal",
            status=self.outcome.value,
            request_id=self.request_id,
            owner_user_id=owner_user_id,
            payload=payload,
            message=self.message,
        )


@dataclass
class PollerConfig:
    interval: float = 5.0
    max_attempts: int = 60
    slow_down_factor: float = 1.5
    max_interval: float = 30.0
    max_consecutive_errors: int = 3
    status_every: int = 3

    @classmethod
    def from_settings(cls, settings: AuthorizationSettings) -> PollerConfig:
        return cls(
            interval=settings.poll_interval_seconds,
            max_attempts=settings.max_poll_attempts,
            slow_down_factor=settings.slow_down_factor,
            max_interval=settings.max_poll_interval_seconds,
            max_consecutive_errors=settings.max_consecutive_errors,
            status_every=settings.status_every,
        )


def next_interval(current: float, factor: float, cap: float) -> float:
    """Back off after slow_down. Never shorter than ``current``, never above ``cap``
    unless ``current`` already was."""
    return max(current, min(current * factor, cap))


@dataclass
class _LoopState:
    interval: float
    budget: int
    attempts: int = 0
    transient_failures: int = 0
    rejections: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.budget


class CompletionPoller:
    """Drives polling for one request at a time and applies the approved effect.

    ``store`` and ``action`` are optional: a poller reading a remote status
    source only observes outcomes, the server that owns the store completes them.
    """

    def __init__(
        self,
        source: StatusSource,
        config: PollerConfig | None = None,
        store: AuthorizationRequestStore | None = None,
        action: ProtectedAction | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.source = source
        self.config = config or PollerConfig()
        self.store = store
        self.action = action
        self._sleep = sleep

    async def run(
        self,
        request_id: str,
        *,
        interval: float | None = None,
        max_attempts: int | None = None,
        emit: EventSink | None = None,
        owner_user_id: str | None = None,
    ) -> PollResult:
        loop = _LoopState(
            interval=self.config.interval if interval is None else interval,
            budget=self.config.max_attempts if max_attempts is None else max_attempts,
        )
        last_state: AuthorizationState | None = AuthorizationState.PENDING

        def _emit(status: str, message: str, **payload: Any) -> None:
            if emit is None:
                return
            emit(
                AuthorizationEvent(
                    event_type="authorization.status",
                    status=status,
                    request_id=request_id,
                    owner_user_id=owner_user_id,
                    payload={"attempt": loop.attempts, **payload},
                    message=message,
                )
            )

        while not loop.exhausted:
            loop.attempts += 1
            try:
                observation = await self.source.observe(request_id)
                if observation.slow_down:
                    result = None
                else:
                    last_state = observation.state
                    result = await self._handle(request_id, observation, loop.attempts)
            except RequestNotFound:
                return self._finish(
                    PollResult(PollOutcome.NOT_FOUND, request_id, loop.attempts, last_state),
                    processed=False,
                )
            except TransientPollError as exc:
                loop.transient_failures += 1
                logger.warning(
                    "Status poll failed (%d/%d): %s",
                    loop.transient_failures,
                    self.config.max_consecutive_errors,
                    exc,
                    extra={"request_id": request_id},
                )
                if loop.transient_failures >= self.config.max_consecutive_errors:
                    return self._finish(
                        PollResult(
                            PollOutcome.FAILED,
                            request_id,
                            loop.attempts,
                            last_state,
                            error=f"status source unavailable: {exc}",
                        ),
                        processed=False,
                    )
                _emit("retrying", "Having trouble checking the authorization status, retrying.")
                await self._pause(loop)
                continue
            except PollRejected as exc:
                loop.rejections += 1
                logger.error(
                    "Status poll rejected (%d/%d): %s",
                    loop.rejections,
                    self.config.max_consecutive_errors,
                    exc.error,
                    extra={"request_id": request_id},
                )
                if loop.rejections >= self.config.max_consecutive_errors:
                    return self._finish(
                        PollResult(
                            PollOutcome.FAILED,
                            request_id,
                            loop.attempts,
                            last_state,
                            error=f"status source rejected the poll: {exc.error}",
                        ),
                        processed=False,
                    )
                await self._pause(loop)
                continue

            loop.transient_failures = 0
            loop.rejections = 0

            if observation.slow_down:
                loop.interval = next_interval(
                    loop.interval, self.config.slow_down_factor, self.config.max_interval
                )
                logger.info(
                    "Slowing down status polls to %.1fs",
                    loop.interval,
                    extra={"request_id": request_id},
                )
                await self._pause(loop)
                continue

            if result is not None:
                return self._finish(result, processed=True)

            if loop.attempts % self.config.status_every == 0:
                _emit(
                    "pending",
                    "Still waiting for approval on your device.",
                    next_poll_after=loop.interval,
                )
            await self._pause(loop)

        return self._finish(
            PollResult(PollOutcome.TIMED_OUT, request_id, loop.attempts, last_state),
            processed=False,
        )

    async def step(self, request_id: str) -> PollResult | None:
        """Observe and process a request once. None means it is still undecided."""
        observation = await self.source.observe(request_id)
        if observation.slow_down:
            return None
        result = await self._handle(request_id, observation, attempts=1)
        return self._finish(result, processed=True) if result is not None else None

    async def _pause(self, loop: _LoopState) -> None:
        # No pause after the final attempt.
        if not loop.exhausted:
            await self._sleep(loop.interval)

    async def _handle(
        self, request_id: str, observation: PollObservation, attempts: int
    ) -> PollResult | None:
        state = observation.state
        if state is AuthorizationState.DENIED:
            return PollResult(PollOutcome.REJECTED, request_id, attempts, state)
        if state is AuthorizationState.EXPIRED:
            return PollResult(PollOutcome.EXPIRED, request_id, attempts, state)
        if state is not AuthorizationState.APPROVED:
            return None

        if observation.error:
            return PollResult(
                PollOutcome.FAILED, request_id, attempts, state, error=observation.error
            )
        if observation.result is not None:
            return PollResult(
                PollOutcome.COMPLETED, request_id, attempts, state, result=observation.result
            )
        if observation.request is None:
            if self.store is None:
                # A remote provider reported approval; it owns the effect.
                return PollResult(PollOutcome.COMPLETED, request_id, attempts, state)
            return None
        return await anyio.to_thread.run_sync(self._complete, observation.request, attempts)

    def _complete(self, request: AuthorizationRequest, attempts: int) -> PollResult | None:
        if self.store is None or self.action is None:
            return None
        request_id = request.request_id
        try:
            claimed = self.store.claim_completion(request_id)
        except RequestNotFound:
            # Completed and removed by another poller since it was observed.
            return PollResult(
                PollOutcome.NOT_FOUND, request_id, attempts, AuthorizationState.APPROVED
            )
        if not claimed:
            # Another poller owns the effect; wait for its result.
            return None
        try:
            result = self.action.apply(request.owner_user_id, request.payload, request_id)
        except Exception as exc:
            logger.exception("Approved action failed", extra={"request_id": request_id})
            self._record(request_id, error=str(exc))
            return PollResult(
                PollOutcome.FAILED,
                request_id,
                attempts,
                AuthorizationState.APPROVED,
                error=str(exc),
            )
        self._record(request_id, result=result)
        return PollResult(
            PollOutcome.COMPLETED,
            request_id,
            attempts,
            AuthorizationState.APPROVED,
            result=result,
        )

    def _record(self, request_id: str, **outcome: Any) -> None:
        try:
            self.store.record_result(request_id, **outcome)
        except (RequestNotFound, StoreUnavailable) as exc:
            # The effect has already run; report it even if the record is lost.
            logger.warning(
                "Could not record authorization outcome: %s", exc, extra={"request_id": request_id}
            )

    def _finish(self, result: PollResult, processed: bool) -> PollResult:
        """Log the outcome and drop the store entry once its decision was fully handled."""
        logger.info(
            "Authorization outcome %s",
            result.outcome.value,
            extra={"request_id": result.request_id, "attempts": result.attempts},
        )
        if processed and result.outcome is not PollOutcome.NOT_FOUND and self.store is not None:
            try:
                self.store.delete(result.request_id)
            except StoreUnavailable as exc:
                logger.warning(
                    "Could not remove finished authorization request: %s",
                    exc,
                    extra={"request_id": result.request_id},
                )
        return result
