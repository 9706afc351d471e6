from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import pytest

from backchannel.core.approval import PopupApprovalChannel, PushApprovalChannel
from backchannel.core.checkout import CheckoutAction
from backchannel.core.initiator import BackchannelInitiator
from backchannel.core.models.checkout import Cart, CartItem, Product
from backchannel.core.stores import InMemoryAuthorizationRequestStore, InMemoryCartStore
from backchannel.runtime.events import AuthorizationEventBus
from backchannel.runtime.sources import PollObservation, StatusSource

TEST_CATALOG = (
    Product(product_id="p1", name="Coffee Beans", description="Whole bean, 1 lb", price=6.25),
    Product(product_id="p2", name="Paper Filters", description="Pack of 100", price=1.5),
)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records intervals and yields control once."""

    def __init__(self, on_sleep: Callable[[int], None] | None = None) -> None:
        self.calls: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.on_sleep:
            self.on_sleep(len(self.calls))
        await asyncio.sleep(0)


class ScriptedSource(StatusSource):
    """Replays observations (or raises exceptions) in order, repeating the last one."""

    def __init__(self, script: Iterable[PollObservation | Exception]) -> None:
        self.script = list(script)
        self.calls = 0

    async def observe(self, request_id: str) -> PollObservation:
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        return step


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryAuthorizationRequestStore:
    return InMemoryAuthorizationRequestStore(clock=clock)


@pytest.fixture
def carts() -> InMemoryCartStore:
    return InMemoryCartStore()


@pytest.fixture
def action(carts) -> CheckoutAction:
    return CheckoutAction(carts, catalog=TEST_CATALOG)


@pytest.fixture
def filled_cart(carts) -> Cart:
    cart = Cart(user_id="alice", items=[CartItem(product_id="p1", quantity=2)])
    carts.put(cart)
    return cart


@pytest.fixture
def bus() -> AuthorizationEventBus:
    return AuthorizationEventBus()


@pytest.fixture
def push_channel(store, bus) -> PushApprovalChannel:
    return PushApprovalChannel(store, bus)


@pytest.fixture
def popup_channel(store, bus) -> PopupApprovalChannel:
    return PopupApprovalChannel(store, bus, "https://shop.example/")


@pytest.fixture
def initiator(store, action, push_channel, bus) -> BackchannelInitiator:
    return BackchannelInitiator(store, action, push_channel, bus, ttl_seconds=300)


@pytest.fixture
def alice_headers() -> dict:
    return {"x-user-id": "alice"}


@pytest.fixture
def bob_headers() -> dict:
    return {"x-user-id": "bob"}
