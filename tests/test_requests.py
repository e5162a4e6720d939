"""
Tests for the RequestLedger: creation, cancellation and claims at the
batch's settled figures.
"""

import pytest
from decimal import Decimal

from kam import (
    RequestKind, RequestStatus,
    AuthorizationError, InvalidBatchState, InvalidRequestState, RequestNotFound,
    StateError, ZeroAmount,
)
from tests.builders import roll, settle


@pytest.fixture
def ledger(system):
    return system.requests


@pytest.fixture
def batch_id(system):
    return system.batches.current_batch("gateway", "USDC")


def burn(ledger, batch_id, amount="10", requester="inst", beneficiary="bob"):
    return ledger.create(RequestKind.BURN, "gateway", "USDC", requester, beneficiary, Decimal(amount), batch_id)


class TestCreate:

    def test_pending_and_indexed(self, ledger, batch_id):
        rid = burn(ledger, batch_id)
        request = ledger.get(rid)
        assert request.status is RequestStatus.PENDING
        assert request.batch_id == batch_id
        assert request.payout is None
        assert [r.request_id for r in ledger.pending_requests("inst")] == [rid]
        assert [r.request_id for r in ledger.pending_requests("bob")] == [rid]

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_amount_must_be_positive(self, ledger, batch_id, amount):
        with pytest.raises(ZeroAmount):
            burn(ledger, batch_id, amount)

    def test_batch_must_be_open(self, system, ledger):
        closed = roll(system, "gateway")
        with pytest.raises(InvalidBatchState):
            burn(ledger, closed)
        assert system.store.requests == {}

    def test_batch_of_another_pair(self, staking_system):
        alpha_batch = staking_system.batches.current_batch("alpha", "USDC")
        with pytest.raises(StateError):
            burn(staking_system.requests, alpha_batch)

    def test_ids_unique(self, ledger, batch_id):
        assert burn(ledger, batch_id) != burn(ledger, batch_id)

    def test_unknown(self, ledger):
        with pytest.raises(RequestNotFound):
            ledger.get("0" * 64)


class TestCancel:

    def test_requester_cancels_while_open(self, ledger, batch_id):
        rid = burn(ledger, batch_id)
        cancelled = ledger.cancel("inst", rid)
        assert cancelled.status is RequestStatus.CANCELLED
        assert ledger.get(rid).status is RequestStatus.CANCELLED
        assert ledger.pending_requests("inst") == []

    def test_beneficiary_cannot_cancel(self, ledger, batch_id):
        rid = burn(ledger, batch_id)
        with pytest.raises(AuthorizationError):
            ledger.cancel("bob", rid)
        assert ledger.get(rid).status is RequestStatus.PENDING

    def test_not_after_close(self, system, ledger, batch_id):
        rid = burn(ledger, batch_id)
        roll(system, "gateway")
        with pytest.raises(InvalidRequestState):
            ledger.cancel("inst", rid)

    def test_only_once(self, ledger, batch_id):
        rid = burn(ledger, batch_id)
        ledger.cancel("inst", rid)
        with pytest.raises(InvalidRequestState):
            ledger.cancel("inst", rid)

    def test_kind_must_match(self, ledger, batch_id):
        rid = burn(ledger, batch_id)
        with pytest.raises(InvalidRequestState):
            ledger.cancel("inst", rid, RequestKind.STAKE)


class TestClaim:

    def test_not_before_settlement(self, system, ledger, batch_id):
        rid = burn(ledger, batch_id)
        with pytest.raises(InvalidRequestState):
            ledger.claim("bob", rid)
        roll(system, "gateway")
        with pytest.raises(InvalidRequestState):
            ledger.claim("bob", rid)
        assert not ledger.is_claimable(rid)

    def test_burn_claimable_by_requester_or_beneficiary(self, system, ledger, batch_id):
        first = burn(ledger, batch_id, "10")
        second = burn(ledger, batch_id, "4")
        settle(system, roll(system, "gateway"))
        assert ledger.is_claimable(first)

        assert ledger.claim("inst", first) == Decimal("10")
        assert ledger.claim("bob", second) == Decimal("4")
        assert ledger.get(first).status is RequestStatus.REDEEMED
        assert ledger.get(first).payout == Decimal("10")
        assert not ledger.is_claimable(first)

    def test_stranger(self, system, ledger, batch_id):
        rid = burn(ledger, batch_id)
        settle(system, roll(system, "gateway"))
        with pytest.raises(AuthorizationError):
            ledger.claim("mallory", rid)

    def test_only_once(self, system, ledger, batch_id):
        rid = burn(ledger, batch_id)
        settle(system, roll(system, "gateway"))
        ledger.claim("bob", rid)
        events = len(system.store.events)
        with pytest.raises(InvalidRequestState):
            ledger.claim("bob", rid)
        assert len(system.store.events) == events

    def test_stake_pays_shares_at_settled_price(self, staking_system):
        ledger = staking_system.requests
        alpha_batch = staking_system.batches.current_batch("alpha", "USDC")
        rid = ledger.create(RequestKind.STAKE, "alpha", "USDC", "alice", "bob", Decimal("50"), alpha_batch)
        settle(staking_system, roll(staking_system, "alpha"))

        with pytest.raises(AuthorizationError):
            ledger.claim("alice", rid)
        assert ledger.claim("bob", rid) == Decimal("50")
        assert ledger.get(rid).status is RequestStatus.CLAIMED
