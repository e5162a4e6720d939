"""
Tests for the SettlementProposalEngine: propose / reject / execute,
cooldown configuration and reconciliation failures.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from kam import (
    BatchStatus, ProposalStatus,
    AuthorizationError, BoundsError, CooldownOutOfBounds, InvalidBatchState,
    InvalidProposalState, LiveProposalExists, ProposalNotFound, ReconciliationError,
    TimelockActive, VetoWindowClosed,
)
from tests.builders import HOUR, roll, settle


def later(system, delta):
    system.advance_time(system.store.current_time + delta)


@pytest.fixture
def closed_batch(system, gateway):
    """Gateway batch holding a 100 USDC deposit, closed with a successor open."""
    gateway.deposit("inst", "USDC", Decimal("100"), "inst")
    return roll(system, "gateway")


class TestPropose:

    def test_relayer_only(self, system, closed_batch):
        with pytest.raises(AuthorizationError):
            system.settlement.propose("guardian", closed_batch, Decimal("100"))

    def test_stores_a_live_proposal(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"), 600)
        proposal = system.settlement.live_proposal(closed_batch)
        assert proposal.proposal_id == pid
        assert proposal.proposed_total_assets == Decimal("100")
        assert proposal.executable_at == system.store.current_time + timedelta(seconds=600)
        assert system.settlement.proposal_status(pid) is ProposalStatus.PROPOSED

    def test_default_cooldown(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"))
        assert system.store.get_proposal(pid).cooldown_seconds == system.config.default_cooldown_seconds

    def test_batch_must_be_closed(self, system):
        open_batch = system.batches.current_batch("gateway", "USDC")
        with pytest.raises(InvalidBatchState):
            system.settlement.propose("relayer", open_batch, Decimal("0"))
        assert system.store.proposals == {}

    def test_negative_total(self, system, closed_batch):
        with pytest.raises(BoundsError):
            system.settlement.propose("relayer", closed_batch, Decimal("-1"))

    def test_cooldown_above_maximum(self, system, closed_batch):
        with pytest.raises(CooldownOutOfBounds):
            system.settlement.propose("relayer", closed_batch, Decimal("100"), 86_401)

    def test_one_live_proposal_per_batch(self, system, closed_batch):
        system.settlement.propose("relayer", closed_batch, Decimal("100"))
        with pytest.raises(LiveProposalExists):
            system.settlement.propose("relayer", closed_batch, Decimal("101"))
        assert len(system.store.proposals) == 1

    def test_predecessor_settles_first(self, system, closed_batch):
        second = roll(system, "gateway")
        with pytest.raises(InvalidBatchState):
            system.settlement.propose("relayer", second, Decimal("100"))
        settle(system, closed_batch)
        assert system.settlement.propose("relayer", second, Decimal("100"))

    def test_propose_reported_reads_custodian(self, system, closed_batch):
        pid = system.settlement.propose_reported("relayer", closed_batch, 0)
        assert system.store.get_proposal(pid).proposed_total_assets == Decimal("100")
        assert not system.store.guard.locked


class TestReject:

    def test_guardian_only(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"))
        with pytest.raises(AuthorizationError):
            system.settlement.reject("relayer", pid)

    def test_deletes_and_allows_reproposal(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("150"))
        system.settlement.reject("guardian", pid)
        assert pid not in system.store.proposals
        assert system.settlement.live_proposal(closed_batch) is None
        assert system.settlement.proposal_status(pid) is ProposalStatus.REJECTED
        assert system.store.get_batch(closed_batch).status is BatchStatus.CLOSED

        again = system.settlement.propose("relayer", closed_batch, Decimal("100"))
        assert again != pid

    def test_veto_window_closes_with_cooldown(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"), 3600)
        later(system, HOUR)
        with pytest.raises(VetoWindowClosed):
            system.settlement.reject("guardian", pid)
        assert system.settlement.proposal_status(pid) is ProposalStatus.ACCEPTED

    def test_executed_cannot_be_rejected(self, system, closed_batch):
        result = settle(system, closed_batch)
        with pytest.raises(InvalidProposalState):
            system.settlement.reject("guardian", result.proposal_id)

    def test_unknown(self, system):
        with pytest.raises(ProposalNotFound):
            system.settlement.reject("guardian", "0" * 64)


class TestExecute:

    def test_relayer_only(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"), 0)
        with pytest.raises(AuthorizationError):
            system.settlement.execute("guardian", pid)

    def test_timelock(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"), 3600)
        later(system, timedelta(minutes=59))
        with pytest.raises(TimelockActive):
            system.settlement.execute("relayer", pid)
        assert system.store.get_batch(closed_batch).status is BatchStatus.CLOSED

        later(system, timedelta(minutes=1))
        result = system.settlement.execute("relayer", pid)
        assert result.batch_id == closed_batch
        assert system.store.get_batch(closed_batch).status is BatchStatus.SETTLED

    def test_settles_at_par(self, system, closed_batch):
        result = settle(system, closed_batch)
        assert result.settlement.net_share_price == Decimal("1")
        assert result.settlement.shares_issued == Decimal("100")
        assert result.settlement.yield_amount == Decimal("0")
        assert result.transfers == ()
        assert system.settlement.proposal_status(result.proposal_id) is ProposalStatus.EXECUTED
        assert system.settlement.live_proposal(closed_batch) is None
        assert system.verify_reconciliation()['valid']

    def test_twice(self, system, closed_batch):
        result = settle(system, closed_batch)
        events = len(system.store.events)
        with pytest.raises(InvalidProposalState):
            system.settlement.execute("relayer", result.proposal_id)
        assert len(system.store.events) == events

    def test_rejected_proposal(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"), 600)
        system.settlement.reject("guardian", pid)
        later(system, HOUR)
        with pytest.raises(ProposalNotFound):
            system.settlement.execute("relayer", pid)
        assert system.store.get_batch(closed_batch).status is BatchStatus.CLOSED

    def test_yield_is_booked(self, system, closed_batch):
        system.store.get_custodian("gateway").record_yield("USDC", Decimal("5"))
        result = settle(system, closed_batch)
        assert result.settlement.yield_amount == Decimal("5")
        assert system.store.get_balance("gateway", "USDC") == Decimal("105")
        assert system.verify_reconciliation()['valid']

    def test_redemptions_leave_for_the_receiver(self, system, gateway):
        gateway.deposit("inst", "USDC", Decimal("100"), "inst")
        gateway.request_redeem("inst", "USDC", Decimal("40"), "inst")
        batch_id = roll(system, "gateway")
        receiver = system.store.get_batch(batch_id).receiver

        result = settle(system, batch_id)

        assert result.transfers == (("gateway", receiver, Decimal("40")),)
        assert result.settlement.assets_returned == Decimal("40")
        assert system.store.get_balance("gateway", "USDC") == Decimal("60")
        assert system.store.get_receiver_balance(receiver, "USDC") == Decimal("40")
        assert system.store.get_custodian("gateway").report_total_assets("gateway", "USDC") == Decimal("60")
        assert system.verify_reconciliation()['valid']


class TestReconciliationFailures:

    def _loss_batch(self, system, gateway):
        gateway.deposit("inst", "USDC", Decimal("100"), "inst")
        gateway.request_redeem("inst", "USDC", Decimal("80"), "inst")
        batch_id = roll(system, "gateway")
        system.store.get_custodian("gateway").record_yield("USDC", Decimal("-50"))
        return batch_id

    def test_redemptions_exceeding_balance_after_loss(self, system, gateway):
        batch_id = self._loss_batch(system, gateway)
        pid = system.settlement.propose("relayer", batch_id, Decimal("50"), 0)
        events = len(system.store.events)

        with pytest.raises(ReconciliationError):
            system.settlement.execute("relayer", pid)

        assert system.store.get_batch(batch_id).status is BatchStatus.CLOSED
        assert system.store.get_proposal(pid).status is ProposalStatus.PROPOSED
        assert system.store.get_balance("gateway", "USDC") == Decimal("100")
        assert len(system.store.events) == events
        assert not system.store.guard.locked

    def test_custodian_cannot_cover_transfers(self, system, gateway):
        batch_id = self._loss_batch(system, gateway)
        # Overstated total: the books balance but the custodian holds only 50
        pid = system.settlement.propose("relayer", batch_id, Decimal("100"), 0)

        with pytest.raises(ReconciliationError):
            system.settlement.execute("relayer", pid)

        custodian = system.store.get_custodian("gateway")
        assert custodian.report_total_assets("gateway", "USDC") == Decimal("50")
        assert system.store.get_batch(batch_id).status is BatchStatus.CLOSED
        assert system.store.get_balance("gateway", "USDC") == Decimal("100")

    def test_corrected_proposal_after_veto(self, system, gateway):
        batch_id = self._loss_batch(system, gateway)
        wrong = system.settlement.propose("relayer", batch_id, Decimal("100"), 600)
        system.settlement.reject("guardian", wrong)
        # Recapitalize, then settle on the true figure
        system.store.get_custodian("gateway").record_yield("USDC", Decimal("30"))
        result = settle(system, batch_id)
        assert result.settlement.yield_amount == Decimal("-20")
        assert system.store.get_balance("gateway", "USDC") == Decimal("0")
        assert system.verify_reconciliation()['valid']


class TestCooldownBounds:

    def test_admin_only(self, system):
        with pytest.raises(AuthorizationError):
            system.settlement.set_cooldown_bounds("relayer", 60, 600, 120)

    def test_update(self, system, closed_batch):
        system.settlement.set_cooldown_bounds("admin", 60, 600, 120)
        assert system.config.min_cooldown_seconds == 60
        assert system.config.default_cooldown_seconds == 120
        with pytest.raises(CooldownOutOfBounds):
            system.settlement.propose("relayer", closed_batch, Decimal("100"), 30)
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"))
        assert system.store.get_proposal(pid).cooldown_seconds == 120

    def test_inconsistent_bounds(self, system):
        before = system.config
        with pytest.raises(CooldownOutOfBounds):
            system.settlement.set_cooldown_bounds("admin", 600, 60, 120)
        assert system.config is before


class TestQueries:

    def test_unknown_status(self, system):
        with pytest.raises(ProposalNotFound):
            system.settlement.proposal_status("0" * 64)

    def test_status_timeline(self, system, closed_batch):
        pid = system.settlement.propose("relayer", closed_batch, Decimal("100"), 3600)
        assert system.settlement.proposal_status(pid) is ProposalStatus.PROPOSED
        later(system, HOUR)
        assert system.settlement.proposal_status(pid) is ProposalStatus.ACCEPTED
        system.settlement.execute("relayer", pid)
        assert system.settlement.proposal_status(pid) is ProposalStatus.EXECUTED
