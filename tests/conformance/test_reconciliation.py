"""
Reconciliation Conformance Tests

INVARIANT: For every asset a, after every completed operation:
    Σ_{v ∈ vaults} virtual_balance(v, a) = Σ_{v ∈ vaults} custodied(v, a)

Request-time operations move virtual value only; settlement moves real
funds to match. Strategy results enter the books only through an executed
settlement proposal, so the invariant is checked after each settlement.

Claims are paid from batch figures and never exceed them:
    total kTokens outstanding   <= gateway virtual balance
    total vault shares minted   <= share supply fixed at settlement
"""

import pytest
from hypothesis import given, settings, HealthCheck
from hypothesis import strategies as st
from decimal import Decimal

from kam import FeeAccrualState
from tests.builders import HOLDERS, START, apply_action, make_system, roll, settle


# =============================================================================
# STRATEGIES FOR PROPERTY-BASED TESTING
# =============================================================================

amounts = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("5000"), places=2)
fractions = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("1"), places=2)
returns = st.decimals(min_value=Decimal("-0.10"), max_value=Decimal("0.20"), places=3)
holders = st.sampled_from(HOLDERS)

actions = st.one_of(
    st.tuples(st.just("deposit"), holders, amounts),
    st.tuples(st.just("redeem"), amounts),
    st.tuples(st.just("stake"), holders, amounts),
    st.tuples(st.just("unstake"), holders, fractions),
    st.tuples(st.just("cancel"), st.integers(min_value=0, max_value=10)),
    st.tuples(st.just("yield"), returns),
    st.tuples(st.just("settle"), st.sampled_from(["gateway", "alpha"])),
    st.tuples(st.just("wait"), st.integers(min_value=1, max_value=24 * 90)),
)


def assert_invariants(system):
    result = system.verify_reconciliation()
    assert result['valid'], result['discrepancies']

    store = system.store
    gateway = system.gateways["gateway"]
    alpha = system.staking_vaults["alpha"]
    assert gateway.token_for("USDC").total_supply() <= store.get_balance("gateway", "USDC")
    assert alpha.shares.total_supply() <= store.get_share_supply("alpha")
    for (vault, asset), balance in store.balances.items():
        assert balance >= 0, (vault, asset)


class TestReconciliationProperties:
    """Property-based reconciliation tests."""

    @given(st.lists(actions, min_size=1, max_size=40))
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_random_scripts_stay_reconciled(self, script):
        """
        PROPERTY: Any interleaving of deposits, redemptions, stakes,
        unstakes, cancellations, yields and settlements keeps the books
        reconciled.
        """
        system = make_system(with_vault=True)
        for action in script:
            apply_action(system, action)
            assert_invariants(system)

    @given(st.lists(actions, min_size=1, max_size=40))
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_random_scripts_with_fees_stay_reconciled(self, script):
        """
        PROPERTY: Fee crystallization moves value to the treasury without
        breaking reconciliation.
        """
        fee_state = FeeAccrualState(
            START, START, management_fee_bps=200, performance_fee_bps=2000, hurdle_rate_bps=300,
        )
        system = make_system(with_vault=True, fee_state=fee_state)
        for action in script:
            apply_action(system, action)
            assert_invariants(system)

    @given(st.lists(st.tuples(holders, amounts), min_size=1, max_size=10))
    @settings(max_examples=50, deadline=None)
    def test_settled_vault_holds_exactly_its_balance(self, stakes):
        """
        PROPERTY: Once a staking vault settles, its custodian holds exactly
        its virtual balance and no transfers remain pending.
        """
        system = make_system(with_vault=True)
        for holder in HOLDERS:
            apply_action(system, ("deposit", holder, Decimal("10000")))
        for holder, amount in stakes:
            apply_action(system, ("stake", holder, amount))
        apply_action(system, ("settle", "alpha"))

        store = system.store
        custodied = store.get_custodian("alpha").report_total_assets("alpha", "USDC")
        assert custodied == store.get_balance("alpha", "USDC")
        assert store.pending_transfers == {}


class TestReconciliationExamples:
    """Explicit reconciliation examples."""

    def test_unbooked_yield_is_a_discrepancy_until_settled(self, funded_staking, alpha):
        rid = alpha.request_stake("alice", "alice", Decimal("100"))
        apply_action(funded_staking, ("settle", "alpha"))
        funded_staking.store.get_custodian("alpha").record_yield("USDC", Decimal("7"))

        result = funded_staking.verify_reconciliation()
        assert not result['valid']
        assert result['discrepancies'][0]['difference'] == Decimal("-7")

        apply_action(funded_staking, ("settle", "alpha"))
        assert funded_staking.verify_reconciliation()['valid']
        assert funded_staking.requests.get(rid).payout == Decimal("100")

    def test_rejected_action_changes_nothing(self, funded_staking):
        before = dict(funded_staking.store.balances)
        assert not apply_action(funded_staking, ("stake", "carol", Decimal("5")))
        assert funded_staking.store.balances == before

    def test_cancel_in_open_batch_after_earlier_settlement(self, funded_staking, alpha):
        alpha.request_stake("alice", "alice", Decimal("100"))
        first = roll(funded_staking, "alpha")
        alpha.request_stake("bob", "bob", Decimal("60"))
        settle(funded_staking, first)

        assert apply_action(funded_staking, ("cancel", 0))
        assert alpha.ktoken.balance_of("bob") == Decimal("1000")
        assert funded_staking.store.pending_transfers == {}
        assert_invariants(funded_staking)

        apply_action(funded_staking, ("settle", "alpha"))
        assert_invariants(funded_staking)
        assert not apply_action(funded_staking, ("cancel", 0))
