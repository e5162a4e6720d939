"""
settlement.py - Settlement Proposal Engine

Two-phase settlement of a closed batch:

    propose  -> stored PROPOSED, cooldown starts
    reject   -> guardian veto while the cooldown runs; the record is deleted
                and the batch can be proposed again with corrected figures
    execute  -> once the cooldown has elapsed: reconcile, price, move funds,
                mark the batch settled

Execution runs under the store's reentrancy guard inside one atomic block.
All bookkeeping (virtual balances, share supply, fee state, batch and
proposal status) is written first; only then are the physical
settlement transfers handed to the router. Every source custodian is checked
for sufficient holdings before the first transfer so that a failed transfer
cannot strand funds half-moved.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from . import fees
from .batches import BatchLifecycleManager
from .core import (
    Batch, BatchSettlement, ProposalStatus, SettlementProposal, Vault, VaultKind,
    ZERO, ONE,
    EVENT_PROPOSAL_CREATED, EVENT_PROPOSAL_REJECTED, EVENT_PROPOSAL_EXECUTED,
    EVENT_COOLDOWN_BOUNDS_UPDATED,
    BoundsError, CooldownOutOfBounds, InvalidBatchState, InvalidProposalState,
    LiveProposalExists, ProposalNotFound, ReconciliationError, TimelockActive,
    VetoWindowClosed,
    to_decimal,
)
from .registry import CapabilityRegistry, require_capability, ROLE_ADMIN, ROLE_GUARDIAN, ROLE_RELAYER
from .router import VirtualBalanceRouter
from .store import LedgerStore

logger = logging.getLogger(__name__)


# (source vault, destination vault or receiver, amount)
PlannedTransfer = Tuple[str, str, Decimal]


@dataclass(frozen=True, slots=True)
class SettlementResult:
    """Outcome of an executed proposal."""
    proposal_id: str
    batch_id: str
    vault: str
    asset: str
    settlement: BatchSettlement
    transfers: Tuple[PlannedTransfer, ...]


class SettlementProposalEngine:
    """
    Propose / veto / execute protocol for closed batches.

    Constructing the engine binds it to the batch manager as the only
    authority allowed to mark batches settled and order settlement
    transfers.

    Example:
        engine = SettlementProposalEngine(store, batches, router, registry)
        pid = engine.propose("relayer", batch_id, Decimal("150"), cooldown_seconds=3600)
        store.advance_time(store.current_time + timedelta(hours=1))
        result = engine.execute("relayer", pid)
    """

    def __init__(
        self,
        store: LedgerStore,
        batches: BatchLifecycleManager,
        router: VirtualBalanceRouter,
        registry: CapabilityRegistry,
    ):
        self.store = store
        self.batches = batches
        self.router = router
        self.registry = registry
        batches.bind_settlement_engine(self)

    # ========================================================================
    # CONFIGURATION
    # ========================================================================

    def set_cooldown_bounds(self, caller: str, min_seconds: int, max_seconds: int, default_seconds: int) -> None:
        """
        Raises:
            AuthorizationError: If caller is not an admin
            CooldownOutOfBounds: If the bounds are inconsistent
        """
        require_capability(self.registry, caller, ROLE_ADMIN)
        try:
            config = self.store.config.with_cooldown_bounds(min_seconds, max_seconds, default_seconds)
        except ValueError as exc:
            raise CooldownOutOfBounds(str(exc)) from exc
        with self.store.atomic():
            self.store.config = config
            self.store.emit(
                EVENT_COOLDOWN_BOUNDS_UPDATED,
                min_seconds=min_seconds, max_seconds=max_seconds, default_seconds=default_seconds,
            )
        logger.info("Cooldown bounds set to [%d, %d], default %d", min_seconds, max_seconds, default_seconds)

    # ========================================================================
    # PROPOSE / REJECT
    # ========================================================================

    def propose(
        self,
        caller: str,
        batch_id: str,
        total_assets: Any,
        cooldown_seconds: Optional[int] = None,
    ) -> str:
        """
        Store a settlement proposal for a CLOSED batch.

        Args:
            total_assets: Real value the vault's custodian holds for the asset
            cooldown_seconds: Timelock; defaults to config.default_cooldown_seconds

        Returns:
            The new proposal id

        Raises:
            AuthorizationError: If caller is not a relayer
            BoundsError: If total_assets is negative
            CooldownOutOfBounds: If the cooldown is outside the configured bounds
            InvalidBatchState: If the batch is not CLOSED or an earlier batch
                of the same pair is still unsettled
            LiveProposalExists: If the batch already has a live proposal
        """
        require_capability(self.registry, caller, ROLE_RELAYER)
        total = to_decimal(total_assets)
        if total < 0:
            raise BoundsError(f"Proposed total assets cannot be negative, got {total}")
        config = self.store.config
        cooldown = config.default_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        if not config.cooldown_in_bounds(cooldown):
            raise CooldownOutOfBounds(
                f"Cooldown {cooldown}s outside [{config.min_cooldown_seconds}, {config.max_cooldown_seconds}]"
            )

        with self.store.atomic():
            batch = self.store.get_batch(batch_id)
            if not batch.is_closed:
                raise InvalidBatchState(f"Batch {batch_id} is {batch.status.value}, not closed")
            if self.store.live_proposal_id(batch_id) is not None:
                logger.warning("Rejected second proposal for batch %s", batch_id[:12])
                raise LiveProposalExists(f"Batch {batch_id} already has a live proposal")
            predecessor = self.batches.unsettled_predecessor(batch)
            if predecessor is not None:
                raise InvalidBatchState(
                    f"Batch #{predecessor.sequence} of {batch.vault}/{batch.asset} must settle first"
                )

            proposal = SettlementProposal(
                proposal_id=self.store.new_id("proposal", batch_id),
                batch_id=batch_id,
                vault=batch.vault,
                asset=batch.asset,
                proposed_total_assets=total,
                created_at=self.store.current_time,
                cooldown_seconds=cooldown,
                proposer=caller,
            )
            self.store.put_proposal(proposal, live=True)
            self.store.emit(
                EVENT_PROPOSAL_CREATED,
                proposal_id=proposal.proposal_id, batch_id=batch_id, vault=batch.vault,
                asset=batch.asset, total_assets=total, cooldown_seconds=cooldown, proposer=caller,
            )
        logger.info(
            "Proposed settlement %s for batch %s: total %s, cooldown %ds",
            proposal.proposal_id[:12], batch_id[:12], total, cooldown,
        )
        return proposal.proposal_id

    def propose_reported(self, caller: str, batch_id: str, cooldown_seconds: Optional[int] = None) -> str:
        """Propose the total the vault's custodian currently reports."""
        batch = self.store.get_batch(batch_id)
        with self.store.guard:
            reported = self.store.get_custodian(batch.vault).report_total_assets(batch.vault, batch.asset)
        return self.propose(caller, batch_id, reported, cooldown_seconds)

    def reject(self, caller: str, proposal_id: str) -> None:
        """
        Guardian veto. Deletes the proposal so the batch can be re-proposed.

        Raises:
            AuthorizationError: If caller is not a guardian
            ProposalNotFound: If the proposal does not exist
            InvalidProposalState: If the proposal was already executed
            VetoWindowClosed: If the cooldown has already elapsed
        """
        require_capability(self.registry, caller, ROLE_GUARDIAN)
        with self.store.atomic():
            proposal = self.store.get_proposal(proposal_id)
            if proposal.status is ProposalStatus.EXECUTED:
                raise InvalidProposalState(f"Proposal {proposal_id} was already executed")
            if self.store.current_time >= proposal.executable_at:
                raise VetoWindowClosed(f"Veto window for proposal {proposal_id} closed at {proposal.executable_at}")
            self.store.delete_proposal(proposal_id)
            self.store.emit(
                EVENT_PROPOSAL_REJECTED,
                proposal_id=proposal_id, batch_id=proposal.batch_id, guardian=caller,
                total_assets=proposal.proposed_total_assets,
            )
        logger.info("Guardian %s rejected proposal %s", caller, proposal_id[:12])

    # ========================================================================
    # EXECUTE
    # ========================================================================

    def execute(self, caller: str, proposal_id: str) -> SettlementResult:
        """
        Execute an accepted proposal.

        Raises:
            AuthorizationError: If caller is not a relayer
            ProposalNotFound: If the proposal does not exist (never proposed or rejected)
            InvalidProposalState: If the proposal was already executed
            TimelockActive: If the cooldown has not elapsed
            ReconciliationError: If settling would make a virtual balance negative
                or a custodian cannot cover its transfers
            ReentrancyError: If called while another settlement holds the guard
        """
        require_capability(self.registry, caller, ROLE_RELAYER)
        with self.store.atomic(), self.store.guard:
            proposal = self.store.get_proposal(proposal_id)
            if proposal.status is ProposalStatus.EXECUTED:
                raise InvalidProposalState(f"Proposal {proposal_id} was already executed")
            now = self.store.current_time
            if now < proposal.executable_at:
                raise TimelockActive(
                    f"Proposal {proposal_id} executable at {proposal.executable_at}, now {now}"
                )
            batch = self.store.get_batch(proposal.batch_id)
            vault = self.store.get_vault(proposal.vault)

            if vault.kind is VaultKind.GATEWAY:
                settlement, transfers = self._settle_gateway(proposal, batch)
            else:
                settlement, transfers = self._settle_staking(proposal, batch, vault)

            self._check_custody(proposal.asset, transfers)
            self.batches.mark_settled(batch.batch_id, settlement, self)
            self.store.put_proposal(
                replace(proposal, status=ProposalStatus.EXECUTED, executed_at=now), live=False,
            )
            self.store.emit(
                EVENT_PROPOSAL_EXECUTED,
                proposal_id=proposal_id, batch_id=batch.batch_id, vault=vault.vault_id,
                asset=proposal.asset, yield_amount=settlement.yield_amount,
                fees_charged=settlement.fees_charged, net_share_price=settlement.net_share_price,
            )

            # External calls last
            for source, destination, amount in transfers:
                self.router.settlement_transfer(source, proposal.asset, amount, destination, self)

        logger.info(
            "Executed proposal %s for %s/%s: yield %s, fees %s, net price %s",
            proposal_id[:12], vault.vault_id, proposal.asset,
            settlement.yield_amount, settlement.fees_charged, settlement.net_share_price,
        )
        return SettlementResult(
            proposal_id=proposal_id,
            batch_id=batch.batch_id,
            vault=vault.vault_id,
            asset=proposal.asset,
            settlement=settlement,
            transfers=tuple(transfers),
        )

    def _book_yield(self, proposal: SettlementProposal) -> Tuple[Decimal, Decimal]:
        """
        Reconcile the proposed total against the virtual balance.

        Real funds of pending transfers still sit with the source, so the
        real value expected at the vault's custodian is its virtual balance
        minus pending inflows plus pending outflows. The difference from the
        proposed total is yield (or loss) and is booked to the vault.

        Returns:
            (yield_amount, balance after yield)
        """
        vault_id, asset = proposal.vault, proposal.asset
        balance = self.store.get_balance(vault_id, asset)
        expected = (
            balance
            - self.store.pending_inflow(vault_id, asset)
            + self.store.pending_outflow(vault_id, asset)
        )
        yield_amount = proposal.proposed_total_assets - expected
        balance_after = balance + yield_amount
        if balance_after < 0:
            raise ReconciliationError(
                f"{vault_id} {asset}: proposed total {proposal.proposed_total_assets} "
                f"leaves a negative virtual balance {balance_after}"
            )
        if yield_amount != 0:
            self.store.adjust_balance(vault_id, asset, yield_amount)
        return yield_amount, balance_after

    def _settle_gateway(
        self,
        proposal: SettlementProposal,
        batch: Batch,
    ) -> Tuple[BatchSettlement, List[PlannedTransfer]]:
        """Gateway batches settle 1:1; redemptions leave for the batch receiver."""
        yield_amount, balance = self._book_yield(proposal)
        redeemed = batch.requested
        if redeemed > balance:
            raise ReconciliationError(
                f"{batch.vault} {batch.asset}: redemptions {redeemed} exceed virtual balance {balance}"
            )
        transfers: List[PlannedTransfer] = []
        if redeemed > 0:
            self.store.adjust_balance(batch.vault, batch.asset, -redeemed)
            self.store.adjust_receiver_balance(batch.receiver, batch.asset, redeemed)
            transfers.append((batch.vault, batch.receiver, redeemed))

        settlement = BatchSettlement(
            proposal_id=proposal.proposal_id,
            total_assets=proposal.proposed_total_assets,
            yield_amount=yield_amount,
            fees_charged=ZERO,
            gross_share_price=ONE,
            net_share_price=ONE,
            shares_issued=batch.deposited,
            assets_returned=redeemed,
        )
        return settlement, transfers

    def _settle_staking(
        self,
        proposal: SettlementProposal,
        batch: Batch,
        vault: Vault,
    ) -> Tuple[BatchSettlement, List[PlannedTransfer]]:
        """
        Price the batch, crystallize fees, issue and redeem shares.

        Deposits of unsettled batches have no shares yet, so they are taken
        out of the assets the price is computed on.
        """
        store = self.store
        asset = store.get_asset(batch.asset)
        vault_id, gateway, treasury = vault.vault_id, vault.gateway, store.config.treasury_vault

        yield_amount, balance = self._book_yield(proposal)
        pricing_assets = balance - fees.unpriced_deposits(store, vault_id)
        if pricing_assets < 0:
            raise ReconciliationError(
                f"{vault_id}: pricing assets {pricing_assets} are negative after yield {yield_amount}"
            )
        supply = store.get_share_supply(vault_id)
        if batch.shares_requested > supply:
            raise ReconciliationError(
                f"{vault_id}: {batch.shares_requested} shares queued but only {supply} outstanding"
            )

        now = store.current_time
        state = store.get_fee_state(vault_id)
        pricing = fees.price_batch(pricing_assets, supply, state, now, asset.decimals, store.config)
        charged = pricing.fees.total
        shares_issued = fees.convert_to_shares(batch.deposited, pricing.net_share_price, asset.decimals)
        assets_returned = min(
            fees.convert_to_assets(batch.shares_requested, pricing.net_share_price, asset.decimals),
            pricing_assets - charged,
        )

        if charged > 0:
            store.adjust_balance(vault_id, batch.asset, -charged)
            store.adjust_balance(treasury, batch.asset, charged)
        if assets_returned > 0:
            store.adjust_balance(vault_id, batch.asset, -assets_returned)
            store.adjust_balance(gateway, batch.asset, assets_returned)
        store.set_share_supply(vault_id, supply + shares_issued - batch.shares_requested)
        store.put_fee_state(vault_id, fees.advance_fee_state(state, pricing, now))

        # Only this batch's intake is delivered; deposits of the open batch
        # stay pending with the gateway until their own settlement
        if batch.deposited > 0:
            store.add_pending_transfer(batch.asset, gateway, vault_id, -batch.deposited)
        net_inflow = batch.deposited - assets_returned
        transfers: List[PlannedTransfer] = []
        if net_inflow > 0:
            transfers.append((gateway, vault_id, net_inflow))
        if charged > 0:
            transfers.append((vault_id, treasury, charged))
        if net_inflow < 0:
            transfers.append((vault_id, gateway, -net_inflow))

        logger.debug(
            "Priced %s batch #%d on %s assets / %s shares: mgmt %s, perf %s",
            vault_id, batch.sequence, pricing_assets, supply,
            pricing.fees.management_fee, pricing.fees.performance_fee,
        )
        settlement = BatchSettlement(
            proposal_id=proposal.proposal_id,
            total_assets=proposal.proposed_total_assets,
            yield_amount=yield_amount,
            fees_charged=charged,
            gross_share_price=pricing.gross_share_price,
            net_share_price=pricing.net_share_price,
            shares_issued=shares_issued,
            assets_returned=assets_returned,
        )
        return settlement, transfers

    def _check_custody(self, asset: str, transfers: List[PlannedTransfer]) -> None:
        """
        Replay the planned transfers against reported holdings.

        Raises:
            ReconciliationError: If any source would be overdrawn
        """
        holdings: Dict[str, Decimal] = {}
        for source, destination, amount in transfers:
            if source not in holdings:
                holdings[source] = self.store.get_custodian(source).report_total_assets(source, asset)
            if holdings[source] < amount:
                raise ReconciliationError(
                    f"Custodian of {source} holds {holdings[source]} {asset}, cannot move {amount}"
                )
            holdings[source] -= amount
            if destination in self.store.vaults:
                if destination not in holdings:
                    holdings[destination] = self.store.get_custodian(destination).report_total_assets(
                        destination, asset
                    )
                holdings[destination] += amount

    # ========================================================================
    # QUERIES
    # ========================================================================

    def proposal_status(self, proposal_id: str) -> ProposalStatus:
        """
        Current status, with ACCEPTED derived from the clock. Rejected
        proposals are gone from the store and are recognized from the log.

        Raises:
            ProposalNotFound: If the id was never proposed
        """
        proposal = self.store.proposals.get(proposal_id)
        if proposal is not None:
            return proposal.status_at(self.store.current_time)
        for event in self.store.events_of(EVENT_PROPOSAL_REJECTED):
            if event.payload_dict.get('proposal_id') == proposal_id:
                return ProposalStatus.REJECTED
        raise ProposalNotFound(f"Proposal {proposal_id} not found")

    def live_proposal(self, batch_id: str) -> Optional[SettlementProposal]:
        proposal_id = self.store.live_proposal_id(batch_id)
        return None if proposal_id is None else self.store.get_proposal(proposal_id)
