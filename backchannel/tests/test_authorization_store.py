from __future__ import annotations

import threading

import pytest

from backchannel.core.errors import AlreadyTerminal, Forbidden, RequestNotFound
from backchannel.core.models.authorization import AuthorizationState, can_transition


def _create(store, owner: str = "alice", ttl: float = 300):
    return store.create(
        owner_user_id=owner,
        payload={"items": [], "total": 0.0},
        binding_message="Checkout for 1 item, Total: 1.00 USD",
        ttl_seconds=ttl,
    )


def test_create_starts_pending_with_ttl(store, clock) -> None:
    request = _create(store)

    assert request.state is AuthorizationState.PENDING
    assert request.owner_user_id == "alice"
    assert (request.expires_at - request.created_at).total_seconds() == 300
    assert store.get(request.request_id).request_id == request.request_id


def test_request_ids_are_unique_and_opaque(store) -> None:
    ids = {_create(store).request_id for _ in range(50)}
    assert len(ids) == 50
    assert all(len(request_id) >= 32 for request_id in ids)


def test_get_unknown_request_raises(store) -> None:
    with pytest.raises(RequestNotFound):
        store.get("missing")


def test_owner_can_approve_once(store) -> None:
    request = _create(store)

    approved = store.transition(request.request_id, "alice", AuthorizationState.APPROVED)
    assert approved.state is AuthorizationState.APPROVED
    assert approved.decided_by == "alice"
    assert approved.decided_at is not None

    with pytest.raises(AlreadyTerminal) as excinfo:
        store.transition(request.request_id, "alice", AuthorizationState.DENIED)
    assert excinfo.value.state is AuthorizationState.APPROVED
    assert store.get(request.request_id).state is AuthorizationState.APPROVED


def test_non_owner_cannot_decide(store) -> None:
    request = _create(store)

    with pytest.raises(Forbidden):
        store.transition(request.request_id, "mallory", AuthorizationState.APPROVED)
    assert store.get(request.request_id).state is AuthorizationState.PENDING


def test_expiry_is_applied_on_read(store, clock) -> None:
    request = _create(store, ttl=300)

    clock.advance(299)
    assert store.get(request.request_id).state is AuthorizationState.PENDING
    clock.advance(1)
    assert store.get(request.request_id).state is AuthorizationState.EXPIRED


def test_expired_request_cannot_be_approved(store, clock) -> None:
    request = _create(store, ttl=60)
    clock.advance(61)

    with pytest.raises(AlreadyTerminal) as excinfo:
        store.transition(request.request_id, "alice", AuthorizationState.APPROVED)
    assert excinfo.value.state is AuthorizationState.EXPIRED


def test_returned_records_are_copies(store) -> None:
    request = _create(store)
    request.state = AuthorizationState.APPROVED
    request.payload["items"] = ["tampered"]

    stored = store.get(request.request_id)
    assert stored.state is AuthorizationState.PENDING
    assert stored.payload["items"] == []


def test_claim_completion_only_after_approval_and_only_once(store) -> None:
    request = _create(store)
    assert store.claim_completion(request.request_id) is False

    store.transition(request.request_id, "alice", AuthorizationState.APPROVED)
    assert store.claim_completion(request.request_id) is True
    assert store.claim_completion(request.request_id) is False


def test_record_result_and_delete(store) -> None:
    request = _create(store)
    store.transition(request.request_id, "alice", AuthorizationState.APPROVED)
    store.claim_completion(request.request_id)

    updated = store.record_result(request.request_id, result={"order_id": "ORDER_1"})
    assert updated.is_completed

    assert store.delete(request.request_id) is True
    assert store.delete(request.request_id) is False
    with pytest.raises(RequestNotFound):
        store.get(request.request_id)


def test_list_for_user_returns_live_pending_requests_newest_first(store, clock) -> None:
    old = _create(store, ttl=60)
    clock.advance(10)
    newer = _create(store)
    clock.advance(10)
    decided = _create(store)
    store.transition(decided.request_id, "alice", AuthorizationState.DENIED)
    _create(store, owner="bob")

    ids = [r.request_id for r in store.list_for_user("alice")]
    assert ids == [newer.request_id, old.request_id]

    clock.advance(45)
    assert [r.request_id for r in store.list_for_user("alice")] == [newer.request_id]


def test_purge_expired_respects_grace(store, clock) -> None:
    short = _create(store, ttl=10)
    long = _create(store, ttl=600)

    clock.advance(30)
    assert store.purge_expired(grace_seconds=60) == 0
    clock.advance(60)
    assert store.purge_expired(grace_seconds=60) == 1

    with pytest.raises(RequestNotFound):
        store.get(short.request_id)
    assert store.get(long.request_id).state is AuthorizationState.PENDING


def test_purge_keeps_approved_request_until_its_outcome_is_recorded(store, clock) -> None:
    request = _create(store, ttl=10)
    store.transition(request.request_id, "alice", AuthorizationState.APPROVED)
    assert store.claim_completion(request.request_id) is True

    clock.advance(120)
    assert store.purge_expired() == 0
    assert store.get(request.request_id).state is AuthorizationState.APPROVED

    store.record_result(request.request_id, result={"order_id": "ORDER_1"})
    assert store.purge_expired() == 1


def test_only_pending_requests_may_transition() -> None:
    for state in AuthorizationState:
        if state is AuthorizationState.PENDING:
            continue
        assert not any(can_transition(state, target) for target in AuthorizationState)


def test_concurrent_approve_and_deny_have_one_winner(store) -> None:
    for _ in range(25):
        request = _create(store)
        barrier = threading.Barrier(2)
        winners: list[AuthorizationState] = []
        losers: list[AuthorizationState] = []

        def decide(target: AuthorizationState, request_id: str = request.request_id) -> None:
            barrier.wait()
            try:
                store.transition(request_id, "alice", target)
                winners.append(target)
            except AlreadyTerminal as exc:
                losers.append(exc.state)

        threads = [
            threading.Thread(target=decide, args=(AuthorizationState.APPROVED,)),
            threading.Thread(target=decide, args=(AuthorizationState.DENIED,)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert losers == winners
        assert store.get(request.request_id).state is winners[0]


def test_concurrent_claims_have_one_winner(store) -> None:
    request = _create(store)
    store.transition(request.request_id, "alice", AuthorizationState.APPROVED)
    barrier = threading.Barrier(8)
    claims: list[bool] = []

    def claim() -> None:
        barrier.wait()
        claims.append(store.claim_completion(request.request_id))

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert claims.count(True) == 1
