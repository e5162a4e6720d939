"""
store.py - Ledger Store

The LedgerStore is the authoritative record arena for the settlement core.
Every other component holds a reference to it and mutates it only through
its designated path (batch manager for batches, settlement engine for
proposals and settled figures, request ledger for requests).

Key responsibilities:
    - Virtual balances keyed by (vault, asset), never negative
    - Arenas of batch, proposal and request records indexed by id
    - Fee accrual state and share supply per staking vault
    - Pending virtual transfers whose real funds have not moved yet
    - Logical clock and an append-only event log
    - Atomic snapshots (all-or-nothing operations) and the reentrancy guard
"""

from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple
import logging

from .adapters import CustodialAdapter, InMemoryCustodian
from .config import ProtocolConfig
from .core import (
    # Types
    Asset, Vault, VaultKind, Batch, BatchStatus, SettlementProposal, Request,
    FeeAccrualState, LedgerEvent,
    # Constants
    ZERO, EVENT_VAULT_REGISTERED, EVENT_BATCH_CREATED, EVENT_BATCH_CLOSED,
    EVENT_BATCH_SETTLED,
    # Exceptions
    AssetNotRegistered, VaultNotRegistered, BatchNotFound, ProposalNotFound,
    RequestNotFound, InsufficientBalance, ReentrancyError,
    # Helpers
    derive_id,
)

logger = logging.getLogger(__name__)


BalanceKey = Tuple[str, str]             # (vault, asset)
TransferKey = Tuple[str, str, str]       # (asset, source vault, target vault)

_BATCH_EVENT_STATUS = {
    EVENT_BATCH_CREATED: BatchStatus.OPEN,
    EVENT_BATCH_CLOSED: BatchStatus.CLOSED,
    EVENT_BATCH_SETTLED: BatchStatus.SETTLED,
}


class ReentrancyGuard:
    """
    Exclusive, non-reentrant lock held around external calls.

    Entering while already held raises ReentrancyError instead of blocking:
    there is a single sequential caller, so re-entry can only come from a
    callee calling back in.
    """

    def __init__(self):
        self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

    def __enter__(self) -> ReentrancyGuard:
        if self._locked:
            raise ReentrancyError("Reentrant call into a locked operation")
        self._locked = True
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._locked = False
        return False


class LedgerStore:
    """
    Authoritative store of virtual balances and keyed records.

    Records are frozen dataclasses, so a snapshot is a shallow copy of each
    table. atomic() takes a snapshot on entry and restores it if the block
    raises, which gives every public operation all-or-nothing semantics.

    Thread Safety:
        Not thread-safe. The model is a single sequential transaction log.

    Example:
        store = LedgerStore(ProtocolConfig(context_id="test"))
        store.register_asset(Asset("USDC"))
        store.register_vault(Vault("gw", VaultKind.GATEWAY), InMemoryCustodian("gw"))
        store.get_balance("gw", "USDC")   # Decimal("0")
    """

    def __init__(
        self,
        config: Optional[ProtocolConfig] = None,
        initial_time: Optional[datetime] = None,
        treasury_custodian: Optional[CustodialAdapter] = None,
    ):
        self.config = config or ProtocolConfig()
        self.assets: Dict[str, Asset] = {}
        self.vaults: Dict[str, Vault] = {}
        self.custodians: Dict[str, CustodialAdapter] = {}
        self.balances: Dict[BalanceKey, Decimal] = {}
        self.batches: Dict[str, Batch] = {}
        self.open_batches: Dict[BalanceKey, str] = {}
        self.proposals: Dict[str, SettlementProposal] = {}
        self.live_proposals: Dict[str, str] = {}          # batch_id -> proposal_id
        self.requests: Dict[str, Request] = {}
        self.requests_by_owner: Dict[str, FrozenSet[str]] = {}
        self.fee_states: Dict[str, FeeAccrualState] = {}
        self.share_supply: Dict[str, Decimal] = {}
        self.pending_transfers: Dict[TransferKey, Decimal] = {}
        self.receiver_balances: Dict[BalanceKey, Decimal] = {}  # (receiver, asset)
        self.events: List[LedgerEvent] = []
        self._counters: Dict[str, int] = {}
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._atomic_depth = 0
        self.guard = ReentrancyGuard()

        # Auto-register the treasury (receives crystallized fees)
        self.register_vault(
            Vault(self.config.treasury_vault, VaultKind.TREASURY),
            treasury_custodian or InMemoryCustodian(self.config.treasury_vault),
        )

    # ========================================================================
    # TIME
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the store."""
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock. Time can only move forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
        self._current_time = new_time

    # ========================================================================
    # ATOMICITY
    # ========================================================================

    def _snapshot(self) -> Tuple[Any, ...]:
        return (
            self.config,
            dict(self.assets),
            dict(self.vaults),
            dict(self.custodians),
            dict(self.balances),
            dict(self.batches),
            dict(self.open_batches),
            dict(self.proposals),
            dict(self.live_proposals),
            dict(self.requests),
            dict(self.requests_by_owner),
            dict(self.fee_states),
            dict(self.share_supply),
            dict(self.pending_transfers),
            dict(self.receiver_balances),
            len(self.events),
            dict(self._counters),
        )

    def _restore(self, snapshot: Tuple[Any, ...]) -> None:
        (
            self.config,
            self.assets,
            self.vaults,
            self.custodians,
            self.balances,
            self.batches,
            self.open_batches,
            self.proposals,
            self.live_proposals,
            self.requests,
            self.requests_by_owner,
            self.fee_states,
            self.share_supply,
            self.pending_transfers,
            self.receiver_balances,
            event_count,
            self._counters,
        ) = snapshot
        del self.events[event_count:]

    @contextmanager
    def atomic(self) -> Iterator[LedgerStore]:
        """
        Run a block with all-or-nothing semantics.

        Nested blocks join the outermost one; only the outermost snapshot is
        restored when an exception escapes.
        """
        snapshot = self._snapshot() if self._atomic_depth == 0 else None
        self._atomic_depth += 1
        try:
            yield self
        except Exception as exc:
            if snapshot is not None:
                self._restore(snapshot)
                logger.warning("Rolled back: %s: %s", type(exc).__name__, exc)
            raise
        finally:
            self._atomic_depth -= 1

    # ========================================================================
    # REGISTRATION
    # ========================================================================

    def register_asset(self, asset: Asset) -> None:
        """
        Raises:
            ValueError: If the symbol is already registered
        """
        if asset.symbol in self.assets:
            raise ValueError(f"Asset {asset.symbol} already registered")
        self.assets[asset.symbol] = asset
        logger.info("Registered asset %s (decimals=%d)", asset.symbol, asset.decimals)

    def register_vault(
        self,
        vault: Vault,
        custodian: CustodialAdapter,
        fee_state: Optional[FeeAccrualState] = None,
    ) -> None:
        """
        Register a vault together with the custodian holding its real funds.

        Staking vaults get a fee state (default: no fees, checkpoints at the
        current time) and a zero share supply.

        Raises:
            ValueError: If the vault id is already registered
            VaultNotRegistered: If a staking vault names an unknown gateway
            AssetNotRegistered: If a staking vault names an unknown asset
        """
        if vault.vault_id in self.vaults:
            raise ValueError(f"Vault {vault.vault_id} already registered")
        if vault.is_staking:
            gateway = self.get_vault(vault.gateway)
            if gateway.kind is not VaultKind.GATEWAY:
                raise VaultNotRegistered(f"{vault.gateway} is not a gateway")
            asset = self.get_asset(vault.asset)
            now = self._current_time
            self.fee_states[vault.vault_id] = fee_state or FeeAccrualState(
                last_management_fee_at=now,
                last_performance_fee_at=now,
                hurdle_rate_bps=asset.hurdle_rate_bps,
            )
            self.share_supply[vault.vault_id] = ZERO
        elif fee_state is not None:
            raise ValueError(f"Only staking vaults carry a fee state, not {vault.vault_id}")
        self.vaults[vault.vault_id] = vault
        self.custodians[vault.vault_id] = custodian
        self.emit(EVENT_VAULT_REGISTERED, vault=vault.vault_id, kind=vault.kind)
        logger.info("Registered vault %s [%s]", vault.vault_id, vault.kind.value)

    # ========================================================================
    # LOOKUPS
    # ========================================================================

    def get_asset(self, symbol: str) -> Asset:
        if symbol not in self.assets:
            raise AssetNotRegistered(f"Asset {symbol} not registered")
        return self.assets[symbol]

    def get_vault(self, vault_id: str) -> Vault:
        if vault_id not in self.vaults:
            raise VaultNotRegistered(f"Vault {vault_id} not registered")
        return self.vaults[vault_id]

    def get_custodian(self, vault_id: str) -> CustodialAdapter:
        self.get_vault(vault_id)
        return self.custodians[vault_id]

    def get_batch(self, batch_id: str) -> Batch:
        if batch_id not in self.batches:
            raise BatchNotFound(f"Batch {batch_id} not found")
        return self.batches[batch_id]

    def get_proposal(self, proposal_id: str) -> SettlementProposal:
        if proposal_id not in self.proposals:
            raise ProposalNotFound(f"Proposal {proposal_id} not found")
        return self.proposals[proposal_id]

    def get_request(self, request_id: str) -> Request:
        if request_id not in self.requests:
            raise RequestNotFound(f"Request {request_id} not found")
        return self.requests[request_id]

    def get_fee_state(self, vault_id: str) -> FeeAccrualState:
        if vault_id not in self.fee_states:
            raise VaultNotRegistered(f"Vault {vault_id} is not a staking vault")
        return self.fee_states[vault_id]

    def get_share_supply(self, vault_id: str) -> Decimal:
        if vault_id not in self.share_supply:
            raise VaultNotRegistered(f"Vault {vault_id} is not a staking vault")
        return self.share_supply[vault_id]

    def open_batch_id(self, vault_id: str, asset: str) -> Optional[str]:
        return self.open_batches.get((vault_id, asset))

    def live_proposal_id(self, batch_id: str) -> Optional[str]:
        return self.live_proposals.get(batch_id)

    def vault_batches(self, vault_id: str, asset: str) -> List[Batch]:
        """All batches of a (vault, asset) pair in sequence order."""
        return sorted(
            (b for b in self.batches.values() if b.vault == vault_id and b.asset == asset),
            key=lambda b: b.sequence,
        )

    # ========================================================================
    # VIRTUAL BALANCES
    # ========================================================================

    def get_balance(self, vault_id: str, asset: str) -> Decimal:
        """
        Raises:
            VaultNotRegistered: If vault is not registered
            AssetNotRegistered: If asset is not registered
        """
        self.get_vault(vault_id)
        self.get_asset(asset)
        return self.balances.get((vault_id, asset), ZERO)

    def adjust_balance(self, vault_id: str, asset: str, delta: Decimal) -> Decimal:
        """
        Apply a signed change to a virtual balance and return the new balance.

        Raises:
            InsufficientBalance: If the result would be negative
        """
        new_balance = self.get_balance(vault_id, asset) + delta
        if new_balance < 0:
            raise InsufficientBalance(
                f"{vault_id} {asset}: virtual balance {new_balance} < 0"
            )
        self.balances[(vault_id, asset)] = new_balance
        logger.debug("Virtual balance %s/%s -> %s", vault_id, asset, new_balance)
        return new_balance

    def total_virtual(self, asset: str) -> Decimal:
        """Sum of all vaults' virtual balances for an asset, in sorted vault order."""
        self.get_asset(asset)
        return sum(
            (self.balances.get((v, asset), ZERO) for v in sorted(self.vaults)),
            ZERO,
        )

    def total_custodied(self, asset: str) -> Decimal:
        """Sum of real holdings reported by every vault's custodian."""
        self.get_asset(asset)
        return sum(
            (self.custodians[v].report_total_assets(v, asset) for v in sorted(self.vaults)),
            ZERO,
        )

    def verify_reconciliation(self, assets: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Check that virtual balances sum to real custodied value per asset.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'virtual': Dict[str, Decimal]
            - 'custodied': Dict[str, Decimal]
            - 'discrepancies': List[Dict] with asset, virtual, custodied, difference

        Example:
            result = store.verify_reconciliation()
            assert result['valid'], result['discrepancies']
        """
        virtual: Dict[str, Decimal] = {}
        custodied: Dict[str, Decimal] = {}
        discrepancies = []
        for asset in sorted(assets or self.assets):
            virtual[asset] = self.total_virtual(asset)
            custodied[asset] = self.total_custodied(asset)
            if virtual[asset] != custodied[asset]:
                discrepancies.append({
                    'asset': asset,
                    'virtual': virtual[asset],
                    'custodied': custodied[asset],
                    'difference': virtual[asset] - custodied[asset],
                })
        return {
            'valid': not discrepancies,
            'virtual': virtual,
            'custodied': custodied,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # PENDING TRANSFERS AND RECEIVERS
    # ========================================================================

    def add_pending_transfer(self, asset: str, source: str, target: str, delta: Decimal) -> None:
        key = (asset, source, target)
        amount = self.pending_transfers.get(key, ZERO) + delta
        if amount < 0:
            raise InsufficientBalance(f"Pending transfer {source}->{target} {asset} would be negative")
        if amount == 0:
            self.pending_transfers.pop(key, None)
        else:
            self.pending_transfers[key] = amount

    def pending_inflow(self, vault_id: str, asset: str) -> Decimal:
        return sum(
            (q for (a, _, t), q in sorted(self.pending_transfers.items()) if a == asset and t == vault_id),
            ZERO,
        )

    def pending_outflow(self, vault_id: str, asset: str) -> Decimal:
        return sum(
            (q for (a, s, _), q in sorted(self.pending_transfers.items()) if a == asset and s == vault_id),
            ZERO,
        )

    def get_receiver_balance(self, receiver: str, asset: str) -> Decimal:
        return self.receiver_balances.get((receiver, asset), ZERO)

    def adjust_receiver_balance(self, receiver: str, asset: str, delta: Decimal) -> Decimal:
        new_balance = self.get_receiver_balance(receiver, asset) + delta
        if new_balance < 0:
            raise InsufficientBalance(f"Receiver {receiver} {asset}: balance {new_balance} < 0")
        self.receiver_balances[(receiver, asset)] = new_balance
        return new_balance

    # ========================================================================
    # RECORD WRITES
    # ========================================================================

    def put_batch(self, batch: Batch) -> None:
        self.batches[batch.batch_id] = batch

    def set_open_batch(self, vault_id: str, asset: str, batch_id: Optional[str]) -> None:
        if batch_id is None:
            self.open_batches.pop((vault_id, asset), None)
        else:
            self.open_batches[(vault_id, asset)] = batch_id

    def put_proposal(self, proposal: SettlementProposal, live: bool) -> None:
        self.proposals[proposal.proposal_id] = proposal
        if live:
            self.live_proposals[proposal.batch_id] = proposal.proposal_id
        elif self.live_proposals.get(proposal.batch_id) == proposal.proposal_id:
            del self.live_proposals[proposal.batch_id]

    def delete_proposal(self, proposal_id: str) -> SettlementProposal:
        proposal = self.get_proposal(proposal_id)
        del self.proposals[proposal_id]
        if self.live_proposals.get(proposal.batch_id) == proposal_id:
            del self.live_proposals[proposal.batch_id]
        return proposal

    def put_request(self, request: Request) -> None:
        self.requests[request.request_id] = request
        owners = {request.requester, request.beneficiary}
        for owner in owners:
            ids = self.requests_by_owner.get(owner, frozenset())
            if request.is_terminal:
                ids = ids - {request.request_id}
            else:
                ids = ids | {request.request_id}
            if ids:
                self.requests_by_owner[owner] = ids
            else:
                self.requests_by_owner.pop(owner, None)

    def requests_of(self, owner: str) -> List[Request]:
        """Non-terminal requests where owner is requester or beneficiary."""
        ids = self.requests_by_owner.get(owner, frozenset())
        return sorted((self.requests[i] for i in ids), key=lambda r: (r.created_at, r.request_id))

    def put_fee_state(self, vault_id: str, state: FeeAccrualState) -> None:
        self.get_fee_state(vault_id)
        self.fee_states[vault_id] = state

    def set_share_supply(self, vault_id: str, supply: Decimal) -> None:
        if supply < 0:
            raise InsufficientBalance(f"Share supply of {vault_id} would be negative")
        self.get_share_supply(vault_id)
        self.share_supply[vault_id] = supply

    # ========================================================================
    # IDS AND EVENTS
    # ========================================================================

    def next_sequence(self, domain: str) -> int:
        """Monotonic counter per domain, starting at 0."""
        value = self._counters.get(domain, 0)
        self._counters[domain] = value + 1
        return value

    def new_id(self, domain: str, *parts: Any) -> str:
        """Derive a fresh id from (context, per-domain counter, parts, now)."""
        counter = self.next_sequence(f"id:{domain}")
        return derive_id(domain, self.config.context_id, counter, *parts, self._current_time)

    def emit(self, event_kind: str, /, **payload: Any) -> LedgerEvent:
        """Append an event to the log. Payloads may carry their own `kind` key."""
        sequence = len(self.events)
        items = tuple(sorted(payload.items()))
        event = LedgerEvent(
            sequence=sequence,
            kind=event_kind,
            timestamp=self._current_time,
            payload=items,
            event_id=derive_id("event", self.config.context_id, sequence, event_kind, items),
        )
        self.events.append(event)
        return event

    def events_of(self, kind: str) -> List[LedgerEvent]:
        return [e for e in self.events if e.kind == kind]

    def batch_history(self, vault_id: str, asset: str) -> Dict[str, List[Tuple[BatchStatus, datetime]]]:
        """
        Rebuild the status timeline of every batch of a (vault, asset) pair
        from the event log alone.

        Returns:
            Dict mapping batch id to [(status, timestamp), ...] in log order.
            Batch ids are in creation order.
        """
        history: Dict[str, List[Tuple[BatchStatus, datetime]]] = {}
        for event in self.events:
            status = _BATCH_EVENT_STATUS.get(event.kind)
            if status is None:
                continue
            payload = event.payload_dict
            if payload.get('vault') != vault_id or payload.get('asset') != asset:
                continue
            history.setdefault(payload['batch_id'], []).append((status, event.timestamp))
        return history

    def __repr__(self) -> str:
        return (
            f"LedgerStore({self.config.context_id}: {len(self.vaults)} vaults, "
            f"{len(self.batches)} batches, {len(self.proposals)} proposals, "
            f"{len(self.requests)} requests, {len(self.events)} events)"
        )
