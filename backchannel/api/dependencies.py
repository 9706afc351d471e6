from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import HTTPException, Request

from backchannel.api.middleware.auth import IdentityContext
from backchannel.api.middleware.rate_limit import PollIntervalGuard
from backchannel.config.settings import get_settings
from backchannel.core.approval import (
    ApprovalChannel,
    PopupApprovalChannel,
    PushApprovalChannel,
)
from backchannel.core.checkout import CheckoutAction
from backchannel.core.errors import AuthorizationError, StoreUnavailable
from backchannel.core.initiator import BackchannelInitiator
from backchannel.core.stores import (
    AuthorizationRequestStore,
    CartStore,
    InMemoryAuthorizationRequestStore,
    InMemoryCartStore,
)
from backchannel.db.postgres.store import PostgresAuthorizationRequestStore, postgres_available
from backchannel.runtime.events import AuthorizationEventBus, authorization_event_bus
from backchannel.runtime.poller import CompletionPoller, PollerConfig
from backchannel.runtime.sources import StoreStatusSource

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_event_bus() -> AuthorizationEventBus:
    return authorization_event_bus


@lru_cache(maxsize=1)
def get_authorization_store() -> AuthorizationRequestStore:
    settings = get_settings()
    if settings.postgres.enabled and postgres_available():
        store = PostgresAuthorizationRequestStore(settings.postgres.url)
        try:
            store.ensure_schema()
        except StoreUnavailable as exc:
            logger.warning("Postgres unavailable, using in-memory authorization store: %s", exc)
        else:
            return store
    return InMemoryAuthorizationRequestStore()


@lru_cache(maxsize=1)
def get_cart_store() -> CartStore:
    return InMemoryCartStore()


@lru_cache(maxsize=1)
def get_checkout_action() -> CheckoutAction:
    return CheckoutAction(get_cart_store())


@lru_cache(maxsize=1)
def get_approval_channel() -> ApprovalChannel:
    settings = get_settings().authorization
    store = get_authorization_store()
    if settings.channel == "popup":
        return PopupApprovalChannel(store, get_event_bus(), settings.public_base_url)
    return PushApprovalChannel(store, get_event_bus())


@lru_cache(maxsize=1)
def get_initiator() -> BackchannelInitiator:
    settings = get_settings().authorization
    return BackchannelInitiator(
        store=get_authorization_store(),
        action=get_checkout_action(),
        channel=get_approval_channel(),
        event_bus=get_event_bus(),
        ttl_seconds=settings.ttl_seconds,
        binding_message_max_length=settings.binding_message_max_length,
    )


@lru_cache(maxsize=1)
def get_poller() -> CompletionPoller:
    settings = get_settings().authorization
    store = get_authorization_store()
    return CompletionPoller(
        StoreStatusSource(store),
        config=PollerConfig.from_settings(settings),
        store=store,
        action=get_checkout_action(),
    )


@lru_cache(maxsize=1)
def get_poll_guard() -> PollIntervalGuard:
    return PollIntervalGuard(get_settings().authorization.min_poll_spacing_seconds)


def require_identity(request: Request) -> IdentityContext:
    auth_error = getattr(request.state, "auth_error", None)
    if auth_error:
        raise HTTPException(status_code=401, detail=str(auth_error))
    identity = getattr(request.state, "identity", None)
    if not identity:
        raise HTTPException(status_code=401, detail="missing identity")
    return identity


_STATUS_CODES = {
    "not_found": 404,
    "forbidden": 403,
    "already_terminal": 409,
    "empty_payload": 400,
    "unauthenticated": 401,
}


def http_error(exc: AuthorizationError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_CODES.get(exc.code, 400),
        detail={"code": exc.code, "message": exc.message},
    )
