from __future__ import annotations

import pytest

from backchannel.core.errors import AlreadyTerminal, Forbidden, RequestNotFound
from backchannel.core.models.authorization import AuthorizationState


@pytest.fixture
def ticket(initiator, filled_cart):
    return initiator.initiate_for("alice")


def test_owner_approves(push_channel, store, ticket) -> None:
    request = push_channel.decide(ticket.request_id, "alice", approve=True)

    assert request.state is AuthorizationState.APPROVED
    assert store.get(ticket.request_id).decided_by == "alice"


def test_owner_denies(push_channel, ticket) -> None:
    request = push_channel.decide(ticket.request_id, "alice", approve=False)

    assert request.state is AuthorizationState.DENIED


def test_repeating_the_same_decision_is_harmless(push_channel, bus, ticket) -> None:
    push_channel.decide(ticket.request_id, "alice", approve=True)
    again = push_channel.decide(ticket.request_id, "alice", approve=True)

    assert again.state is AuthorizationState.APPROVED
    transitions = [
        e
        for e in bus.history("alice")
        if e.event_type == "authorization.transition" and e.status == "approved"
    ]
    assert len(transitions) == 1


def test_conflicting_decision_is_rejected(push_channel, ticket) -> None:
    push_channel.decide(ticket.request_id, "alice", approve=True)

    with pytest.raises(AlreadyTerminal):
        push_channel.decide(ticket.request_id, "alice", approve=False)


def test_other_user_cannot_decide(push_channel, store, ticket) -> None:
    with pytest.raises(Forbidden):
        push_channel.decide(ticket.request_id, "bob", approve=True)
    assert store.get(ticket.request_id).state is AuthorizationState.PENDING


def test_decision_on_expired_request_is_rejected(push_channel, clock, ticket) -> None:
    clock.advance(301)

    with pytest.raises(AlreadyTerminal) as excinfo:
        push_channel.decide(ticket.request_id, "alice", approve=True)
    assert excinfo.value.state is AuthorizationState.EXPIRED


def test_decision_publishes_transition(push_channel, bus, ticket) -> None:
    push_channel.decide(ticket.request_id, "alice", approve=False)

    event = list(bus.history("alice"))[-1]
    assert event.event_type == "authorization.transition"
    assert event.payload == {
        "old_state": "pending",
        "new_state": "denied",
        "actor": "alice",
        "channel": "push",
    }


def test_prompt_is_only_shown_to_owner(push_channel, ticket) -> None:
    request = push_channel.prompt(ticket.request_id, "alice")
    assert request.binding_message == ticket.binding_message

    with pytest.raises(Forbidden):
        push_channel.prompt(ticket.request_id, "bob")
    with pytest.raises(RequestNotFound):
        push_channel.prompt("unknown", "alice")
