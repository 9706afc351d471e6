from __future__ import annotations

import asyncio

import pytest

from backchannel.core.errors import (
    PollRejected,
    RequestNotFound,
    StoreUnavailable,
    TransientPollError,
)
from backchannel.core.models.authorization import AuthorizationState
from backchannel.core.models.checkout import CartItem
from backchannel.runtime.poller import (
    CompletionPoller,
    PollerConfig,
    PollOutcome,
    next_interval,
)
from backchannel.runtime.sources import PollObservation, StoreStatusSource
from backchannel.tests.conftest import RecordingSleep, ScriptedSource

PENDING = PollObservation(state=AuthorizationState.PENDING)


@pytest.fixture
def ticket(initiator, filled_cart):
    return initiator.initiate_for("alice")


def _poller(store, action, sleep, **config) -> CompletionPoller:
    return CompletionPoller(
        StoreStatusSource(store),
        config=PollerConfig(**{"interval": 5.0, "max_attempts": 10, **config}),
        store=store,
        action=action,
        sleep=sleep,
    )


@pytest.mark.asyncio
async def test_approval_completes_checkout_once(store, action, carts, push_channel, ticket):
    def approve_on_second_sleep(count: int) -> None:
        if count == 2:
            push_channel.decide(ticket.request_id, "alice", approve=True)

    sleep = RecordingSleep(approve_on_second_sleep)
    result = await _poller(store, action, sleep).run(ticket.request_id)

    assert result.outcome is PollOutcome.COMPLETED
    assert result.attempts == 3
    assert result.result["order_id"].startswith("ORDER_")
    assert result.result["total"] == 12.5
    assert carts.get("alice").items == []
    assert len(action.orders()) == 1
    with pytest.raises(RequestNotFound):
        store.get(ticket.request_id)


@pytest.mark.asyncio
async def test_denial_leaves_cart_untouched(store, action, carts, push_channel, ticket):
    push_channel.decide(ticket.request_id, "alice", approve=False)

    result = await _poller(store, action, RecordingSleep()).run(ticket.request_id)

    assert result.outcome is PollOutcome.REJECTED
    assert result.state is AuthorizationState.DENIED
    assert len(carts.get("alice").items) == 1
    assert action.orders() == []


@pytest.mark.asyncio
async def test_expiry_before_approval(store, action, carts, clock, ticket):
    sleep = RecordingSleep(lambda count: clock.advance(120))

    result = await _poller(store, action, sleep).run(ticket.request_id)

    assert result.outcome is PollOutcome.EXPIRED
    assert result.attempts == 4
    assert len(carts.get("alice").items) == 1


@pytest.mark.asyncio
async def test_attempt_budget_exhausted_times_out(store, action, ticket):
    sleep = RecordingSleep()

    result = await _poller(store, action, sleep, max_attempts=4).run(ticket.request_id)

    assert result.outcome is PollOutcome.TIMED_OUT
    assert result.attempts == 4
    assert sleep.calls == [5.0, 5.0, 5.0]
    # The request outlives the caller's wait; only its own TTL ends it.
    assert store.get(ticket.request_id).state is AuthorizationState.PENDING


@pytest.mark.asyncio
async def test_run_overrides_interval_and_budget(store, action, ticket):
    sleep = RecordingSleep()

    poller = _poller(store, action, sleep)

    result = await poller.run(ticket.request_id, interval=2.0, max_attempts=2)

    assert result.outcome is PollOutcome.TIMED_OUT
    assert result.attempts == 2
    assert sleep.calls == [2.0]


@pytest.mark.asyncio
async def test_zero_budget_times_out_without_polling() -> None:
    source = ScriptedSource([PENDING])
    sleep = RecordingSleep()

    result = await CompletionPoller(source, sleep=sleep).run("req", max_attempts=0)

    assert result.outcome is PollOutcome.TIMED_OUT
    assert result.attempts == 0
    assert source.calls == 0
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_slow_down_backs_off_monotonically_up_to_cap() -> None:
    source = ScriptedSource([PollObservation.slowed()] * 6 + [PENDING])
    sleep = RecordingSleep()
    poller = CompletionPoller(
        source,
        PollerConfig(interval=5.0, max_attempts=8, slow_down_factor=1.5, max_interval=12.0),
        sleep=sleep,
    )

    await poller.run("req")

    assert sleep.calls[:3] == [7.5, 11.25, 12.0]
    assert all(b >= a for a, b in zip(sleep.calls, sleep.calls[1:], strict=False))
    assert max(sleep.calls) == 12.0


def test_next_interval_never_decreases() -> None:
    assert next_interval(5.0, 1.5, 30.0) == 7.5
    assert next_interval(25.0, 1.5, 30.0) == 30.0
    assert next_interval(40.0, 1.5, 30.0) == 40.0


@pytest.mark.asyncio
async def test_transient_errors_are_retried_then_recover() -> None:
    source = ScriptedSource(
        [
            TransientPollError("boom"),
            TransientPollError("boom"),
            PollObservation(state=AuthorizationState.APPROVED, result={"order_id": "ORDER_X"}),
        ]
    )
    events = []
    poller = CompletionPoller(
        source, PollerConfig(max_consecutive_errors=3), sleep=RecordingSleep()
    )

    result = await poller.run("req", emit=events.append)

    assert result.outcome is PollOutcome.COMPLETED
    assert result.result == {"order_id": "ORDER_X"}
    assert [e.status for e in events] == ["retrying", "retrying"]


@pytest.mark.asyncio
async def test_consecutive_transient_errors_fail_the_wait() -> None:
    source = ScriptedSource([TransientPollError("unreachable")])
    poller = CompletionPoller(
        source, PollerConfig(max_consecutive_errors=3), sleep=RecordingSleep()
    )

    result = await poller.run("req")

    assert result.outcome is PollOutcome.FAILED
    assert result.attempts == 3
    assert "unreachable" in result.error


@pytest.mark.asyncio
async def test_error_counter_resets_after_a_successful_poll() -> None:
    source = ScriptedSource(
        [
            TransientPollError("a"),
            TransientPollError("b"),
            PENDING,
            TransientPollError("c"),
            TransientPollError("d"),
            PollObservation(state=AuthorizationState.DENIED),
        ]
    )
    poller = CompletionPoller(
        source, PollerConfig(max_consecutive_errors=3), sleep=RecordingSleep()
    )

    result = await poller.run("req")

    assert result.outcome is PollOutcome.REJECTED


@pytest.mark.asyncio
async def test_rejected_polls_fail_as_configuration_error() -> None:
    source = ScriptedSource([PollRejected("unauthorized_client", "client not allowed")])
    poller = CompletionPoller(
        source, PollerConfig(max_consecutive_errors=2), sleep=RecordingSleep()
    )

    result = await poller.run("req")

    assert result.outcome is PollOutcome.FAILED
    assert "unauthorized_client" in result.error


@pytest.mark.asyncio
async def test_missing_request_reports_not_found() -> None:
    source = ScriptedSource([PENDING, RequestNotFound("req")])
    poller = CompletionPoller(source, sleep=RecordingSleep())

    result = await poller.run("req")

    assert result.outcome is PollOutcome.NOT_FOUND
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_pending_status_emitted_every_n_attempts() -> None:
    events = []
    poller = CompletionPoller(
        ScriptedSource([PENDING]),
        PollerConfig(interval=5.0, max_attempts=7, status_every=3),
        sleep=RecordingSleep(),
    )

    result = await poller.run("req", emit=events.append, owner_user_id="alice")

    assert result.outcome is PollOutcome.TIMED_OUT
    assert [e.payload["attempt"] for e in events] == [3, 6]
    assert all(e.status == "pending" and e.owner_user_id == "alice" for e in events)
    assert events[0].payload["next_poll_after"] == 5.0


@pytest.mark.asyncio
async def test_concurrent_pollers_apply_effect_exactly_once(
    store, action, carts, push_channel, ticket
):
    push_channel.decide(ticket.request_id, "alice", approve=True)
    pollers = [_poller(store, action, RecordingSleep()) for _ in range(5)]

    results = await asyncio.gather(*(p.run(ticket.request_id) for p in pollers))

    outcomes = [r.outcome for r in results]
    assert PollOutcome.COMPLETED in outcomes
    assert set(outcomes) <= {PollOutcome.COMPLETED, PollOutcome.NOT_FOUND}
    assert len(action.orders()) == 1
    assert carts.get("alice").items == []


@pytest.mark.asyncio
async def test_failing_effect_is_reported(store, push_channel, ticket):
    class BrokenAction:
        name = "broken"
        calls = 0

        def apply(self, user_id, payload, request_id):
            BrokenAction.calls += 1
            raise RuntimeError("payment provider down")

    push_channel.decide(ticket.request_id, "alice", approve=True)
    poller = CompletionPoller(
        StoreStatusSource(store), store=store, action=BrokenAction(), sleep=RecordingSleep()
    )

    result = await poller.run(ticket.request_id)

    assert result.outcome is PollOutcome.FAILED
    assert result.error == "payment provider down"
    assert BrokenAction.calls == 1


@pytest.mark.asyncio
async def test_step_reports_pending_then_completion(store, action, push_channel, ticket):
    poller = _poller(store, action, RecordingSleep())

    assert await poller.step(ticket.request_id) is None

    push_channel.decide(ticket.request_id, "alice", approve=True)
    result = await poller.step(ticket.request_id)

    assert result.outcome is PollOutcome.COMPLETED
    assert result.to_event("alice").is_terminal


def test_denial_and_expiry_are_rejections() -> None:
    assert PollOutcome.REJECTED.is_rejection
    assert PollOutcome.EXPIRED.is_rejection
    assert not PollOutcome.TIMED_OUT.is_rejection
    assert not PollOutcome.COMPLETED.is_rejection


@pytest.mark.asyncio
async def test_remote_approval_without_result_completes() -> None:
    source = ScriptedSource([PENDING, PollObservation(state=AuthorizationState.APPROVED)])

    result = await CompletionPoller(source, sleep=RecordingSleep()).run("req")

    assert result.outcome is PollOutcome.COMPLETED
    assert result.attempts == 2
    assert result.state is AuthorizationState.APPROVED


@pytest.mark.asyncio
async def test_stale_approval_after_completion_is_not_found(
    store, action, push_channel, ticket
):
    push_channel.decide(ticket.request_id, "alice", approve=True)
    stale = PollObservation(
        state=AuthorizationState.APPROVED, request=store.get(ticket.request_id)
    )

    first = await _poller(store, action, RecordingSleep()).run(ticket.request_id)
    late = CompletionPoller(
        ScriptedSource([stale]), store=store, action=action, sleep=RecordingSleep()
    )
    second = await late.run(ticket.request_id)

    assert first.outcome is PollOutcome.COMPLETED
    assert second.outcome is PollOutcome.NOT_FOUND
    assert len(action.orders()) == 1


@pytest.mark.asyncio
async def test_lost_result_record_still_reports_completion(
    store, action, push_channel, ticket, monkeypatch
):
    def unavailable(request_id, result=None, error=None):
        raise StoreUnavailable("connection reset")

    monkeypatch.setattr(store, "record_result", unavailable)
    push_channel.decide(ticket.request_id, "alice", approve=True)

    result = await _poller(store, action, RecordingSleep()).run(ticket.request_id)

    assert result.outcome is PollOutcome.COMPLETED
    assert len(action.orders()) == 1


@pytest.mark.asyncio
async def test_unavailable_store_fails_after_consecutive_errors(store, action, ticket, monkeypatch):
    def unavailable(request_id):
        raise StoreUnavailable("postgres unreachable")

    monkeypatch.setattr(store, "get", unavailable)
    sleep = RecordingSleep()

    result = await _poller(store, action, sleep, max_consecutive_errors=3).run(ticket.request_id)

    assert result.outcome is PollOutcome.FAILED
    assert result.attempts == 3
    assert "postgres unreachable" in result.error
    assert len(action.orders()) == 0


@pytest.mark.asyncio
async def test_items_added_while_waiting_stay_in_the_cart(
    store, action, carts, push_channel, ticket
):
    cart = carts.get("alice")
    cart.items.append(CartItem(product_id="p2", quantity=1))
    carts.put(cart)
    push_channel.decide(ticket.request_id, "alice", approve=True)

    result = await _poller(store, action, RecordingSleep()).run(ticket.request_id)

    assert result.outcome is PollOutcome.COMPLETED
    assert result.result["total"] == 12.5
    items = carts.get("alice").items
    assert [(i.product_id, i.quantity) for i in items] == [("p2", 1)]
