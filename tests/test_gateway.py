"""
Tests for the IssuanceGateway: 1:1 issuance, batched redemption and
kToken escrow.
"""

import logging
import pytest
from decimal import Decimal

from kam import (
    Asset, IssuanceGateway, InMemoryToken, RequestStatus,
    AssetNotRegistered, AuthorizationError, CapExceeded, InsufficientBalance,
    InvalidRequestState, StateError, ZeroAmount,
)
from kam.core import EVENT_RECEIVER_PAYOUT
from tests.builders import make_system, roll, settle


def custodied(system, vault="gateway", asset="USDC"):
    return system.store.get_custodian(vault).report_total_assets(vault, asset)


class TestSetup:

    def test_only_gateway_vaults(self, staking_system):
        s = staking_system
        with pytest.raises(StateError):
            IssuanceGateway(s.store, s.batches, s.router, s.requests, s.registry, "alpha")

    def test_register_token_admin_only(self, gateway):
        with pytest.raises(AuthorizationError):
            gateway.register_token("inst", "USDC", InMemoryToken("kUSD2"))

    def test_one_token_per_asset(self, gateway):
        with pytest.raises(ValueError):
            gateway.register_token("admin", "USDC", InMemoryToken("kUSD2"))

    def test_unknown_token(self, gateway):
        with pytest.raises(AssetNotRegistered):
            gateway.token_for("WBTC")

    def test_vault_additions_are_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="kam.system"):
            make_system(with_vault=True)
        messages = [r.getMessage() for r in caplog.records if r.name == "kam.system"]
        assert messages == ["Added gateway gateway", "Added primary staking vault alpha over gateway/USDC"]


class TestDeposit:

    def test_mints_one_to_one(self, system, gateway, kusd):
        assert gateway.deposit("inst", "USDC", Decimal("100"), "alice") == Decimal("100")
        assert kusd.balance_of("alice") == Decimal("100")
        assert system.store.get_balance("gateway", "USDC") == Decimal("100")
        assert custodied(system) == Decimal("100")
        batch = system.store.get_batch(system.batches.current_batch("gateway", "USDC"))
        assert batch.deposited == Decimal("100")
        assert system.verify_reconciliation()['valid']

    def test_institutions_only(self, system, gateway, kusd):
        with pytest.raises(AuthorizationError):
            gateway.deposit("alice", "USDC", Decimal("100"), "alice")
        assert kusd.total_supply() == Decimal("0")

    def test_zero(self, system, gateway, kusd):
        events = len(system.store.events)
        with pytest.raises(ZeroAmount):
            gateway.deposit("inst", "USDC", Decimal("0"), "alice")
        assert len(system.store.events) == events
        assert custodied(system) == Decimal("0")

    def test_mint_cap(self, system, gateway):
        system.register_asset("admin", Asset("WBTC", decimals=8, max_mint_per_batch=Decimal("1")))
        kbtc = InMemoryToken("kBTC")
        gateway.register_token("admin", "WBTC", kbtc)
        system.batches.create_batch("relayer", "gateway", "WBTC")

        gateway.deposit("inst", "WBTC", Decimal("1"), "inst")
        with pytest.raises(CapExceeded):
            gateway.deposit("inst", "WBTC", Decimal("0.00000001"), "inst")

        assert kbtc.total_supply() == Decimal("1")
        assert custodied(system, asset="WBTC") == Decimal("1")
        assert system.verify_reconciliation()['valid']


class TestRedeem:

    def test_escrows_ktokens(self, system, gateway, kusd):
        gateway.deposit("inst", "USDC", Decimal("100"), "inst")
        rid = gateway.request_redeem("inst", "USDC", Decimal("40"), "inst")
        assert kusd.balance_of("inst") == Decimal("60")
        assert kusd.balance_of("gateway") == Decimal("40")
        assert system.requests.get(rid).status is RequestStatus.PENDING
        # Balance moves only at settlement
        assert system.store.get_balance("gateway", "USDC") == Decimal("100")

    def test_caller_must_hold_ktokens(self, system, gateway, kusd):
        gateway.deposit("inst", "USDC", Decimal("100"), "alice")
        with pytest.raises(InsufficientBalance):
            gateway.request_redeem("inst", "USDC", Decimal("10"), "inst")
        batch = system.store.get_batch(system.batches.current_batch("gateway", "USDC"))
        assert batch.requested == Decimal("0")
        assert system.store.requests == {}

    def test_cancel_returns_escrow(self, system, gateway, kusd):
        gateway.deposit("inst", "USDC", Decimal("100"), "inst")
        rid = gateway.request_redeem("inst", "USDC", Decimal("40"), "inst")
        gateway.cancel_redeem("inst", rid)
        assert kusd.balance_of("inst") == Decimal("100")
        assert kusd.balance_of("gateway") == Decimal("0")
        batch = system.store.get_batch(system.batches.current_batch("gateway", "USDC"))
        assert batch.requested == Decimal("0")

    def test_finalize_after_settlement(self, system, gateway, kusd):
        gateway.deposit("inst", "USDC", Decimal("100"), "inst")
        rid = gateway.request_redeem("inst", "USDC", Decimal("40"), "treasury-desk")
        with pytest.raises(InvalidRequestState):
            gateway.finalize_redeem("inst", rid)

        batch_id = roll(system, "gateway")
        settle(system, batch_id)
        receiver = system.store.get_batch(batch_id).receiver
        assert system.store.get_receiver_balance(receiver, "USDC") == Decimal("40")

        assert gateway.finalize_redeem("treasury-desk", rid) == Decimal("40")
        assert system.store.get_receiver_balance(receiver, "USDC") == Decimal("0")
        assert kusd.total_supply() == Decimal("60")
        assert system.requests.get(rid).status is RequestStatus.REDEEMED
        payout = system.store.events_of(EVENT_RECEIVER_PAYOUT)[-1].payload_dict
        assert payout['beneficiary'] == "treasury-desk"
        assert payout['amount'] == Decimal("40")
        assert system.verify_reconciliation()['valid']

    def test_kusd_supply_tracks_gateway_balance(self, system, gateway, kusd):
        gateway.deposit("inst", "USDC", Decimal("100"), "inst")
        rid = gateway.request_redeem("inst", "USDC", Decimal("25"), "inst")
        settle(system, roll(system, "gateway"))
        gateway.finalize_redeem("inst", rid)
        assert kusd.total_supply() == system.store.get_balance("gateway", "USDC") == Decimal("75")

    def test_request_of_another_vault(self, funded_staking):
        alpha = funded_staking.staking_vaults["alpha"]
        rid = alpha.request_stake("alice", "alice", Decimal("10"))
        with pytest.raises(StateError):
            funded_staking.gateways["gateway"].cancel_redeem("alice", rid)
