"""
batches.py - Batch Lifecycle Manager

The only component allowed to transition batch state. Enforces the
OPEN -> CLOSED -> SETTLED state machine, the one-open-batch-per-(vault, asset)
rule, and the per-batch mint / redeem caps of each asset.

mark_settled() accepts only the settlement engine bound through
bind_settlement_engine(); everything else that touches a batch goes through
the record_* / release_* bookkeeping methods used by the router.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
from typing import Any, Optional
import logging

from . import fees
from .core import (
    Batch, BatchSettlement, BatchStatus, VaultKind,
    ZERO, ONE, EVENT_BATCH_CREATED, EVENT_BATCH_CLOSED, EVENT_BATCH_SETTLED,
    AuthorizationError, CapExceeded, InvalidBatchState, StateError,
    derive_id,
)
from .registry import CapabilityRegistry, require_capability, ROLE_RELAYER, ROLE_OPERATOR
from .store import LedgerStore

logger = logging.getLogger(__name__)


class BatchLifecycleManager:
    """
    Creates, closes and settles batches for (vault, asset) pairs.

    All transition violations raise synchronously and leave the store
    untouched; they never affect other batches.

    Example:
        batches = BatchLifecycleManager(store, registry)
        batch_id = batches.create_batch("relayer", "gateway", "USDC")
        next_id = batches.close_batch("relayer", batch_id, create_next=True)
    """

    def __init__(self, store: LedgerStore, registry: CapabilityRegistry):
        self.store = store
        self.registry = registry
        self._settlement_engine: Optional[Any] = None

    # ========================================================================
    # SETTLEMENT ENGINE BINDING
    # ========================================================================

    @property
    def settlement_engine(self) -> Optional[Any]:
        return self._settlement_engine

    def bind_settlement_engine(self, engine: Any) -> None:
        """
        Bind the one object allowed to call mark_settled().

        Raises:
            StateError: If a different engine is already bound
        """
        if self._settlement_engine is not None and self._settlement_engine is not engine:
            raise StateError("A settlement engine is already bound")
        self._settlement_engine = engine

    def require_settlement_authority(self, authority: Any) -> None:
        if self._settlement_engine is None or authority is not self._settlement_engine:
            raise AuthorizationError("Only the settlement engine may perform this operation")

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def create_batch(self, caller: str, vault_id: str, asset: str) -> str:
        """
        Open a new batch for (vault, asset).

        Raises:
            AuthorizationError: If caller is neither relayer nor operator
            InvalidBatchState: If an OPEN batch already exists for the pair
        """
        require_capability(self.registry, caller, ROLE_RELAYER, ROLE_OPERATOR)
        with self.store.atomic():
            return self._open_batch(vault_id, asset)

    def close_batch(self, caller: str, batch_id: str, create_next: bool = False) -> Optional[str]:
        """
        Close an OPEN batch, optionally opening its successor in the same step.

        Returns:
            The successor batch id if create_next, else None

        Raises:
            AuthorizationError: If caller is neither relayer nor operator
            BatchNotFound: If the batch does not exist
            InvalidBatchState: If the batch is not OPEN
        """
        require_capability(self.registry, caller, ROLE_RELAYER, ROLE_OPERATOR)
        with self.store.atomic():
            batch = self._transition(batch_id, BatchStatus.CLOSED)
            closed = replace(batch, status=BatchStatus.CLOSED, closed_at=self.store.current_time)
            self.store.put_batch(closed)
            self.store.set_open_batch(batch.vault, batch.asset, None)
            self.store.emit(
                EVENT_BATCH_CLOSED,
                batch_id=batch_id, vault=batch.vault, asset=batch.asset,
                deposited=batch.deposited, requested=batch.requested,
                shares_requested=batch.shares_requested,
            )
            logger.info("Closed batch %s (%s/%s #%d)", batch_id[:12], batch.vault, batch.asset, batch.sequence)
            if create_next:
                return self._open_batch(batch.vault, batch.asset)
            return None

    def mark_settled(self, batch_id: str, settlement: BatchSettlement, authority: Any) -> Batch:
        """
        Mark a CLOSED batch SETTLED with its fixed settlement figures.

        Raises:
            AuthorizationError: If authority is not the bound settlement engine
            InvalidBatchState: If the batch is not CLOSED (including already SETTLED)
        """
        self.require_settlement_authority(authority)
        with self.store.atomic():
            batch = self._transition(batch_id, BatchStatus.SETTLED)
            settled = replace(
                batch,
                status=BatchStatus.SETTLED,
                settled_at=self.store.current_time,
                settlement=settlement,
            )
            self.store.put_batch(settled)
            self.store.emit(
                EVENT_BATCH_SETTLED,
                batch_id=batch_id, vault=batch.vault, asset=batch.asset,
                proposal_id=settlement.proposal_id,
                total_assets=settlement.total_assets,
                net_share_price=settlement.net_share_price,
            )
            logger.info(
                "Settled batch %s (%s/%s #%d) at net price %s",
                batch_id[:12], batch.vault, batch.asset, batch.sequence, settlement.net_share_price,
            )
            return settled

    def _transition(self, batch_id: str, target: BatchStatus) -> Batch:
        batch = self.store.get_batch(batch_id)
        if not batch.can_transition_to(target):
            logger.warning(
                "Rejected batch transition %s: %s -> %s",
                batch_id[:12], batch.status.value, target.value,
            )
            raise InvalidBatchState(
                f"Batch {batch_id} cannot move from {batch.status.value} to {target.value}"
            )
        return batch

    def _open_batch(self, vault_id: str, asset: str) -> str:
        vault = self.store.get_vault(vault_id)
        self.store.get_asset(asset)
        if vault.kind is VaultKind.TREASURY:
            raise StateError("The treasury does not take batches")
        if not vault.holds(asset):
            raise StateError(f"Vault {vault_id} does not hold {asset}")
        if self.store.open_batch_id(vault_id, asset) is not None:
            raise InvalidBatchState(f"{vault_id}/{asset} already has an open batch")

        now = self.store.current_time
        sequence = self.store.next_sequence(f"batch:{vault_id}:{asset}")
        batch_id = derive_id("batch", self.store.config.context_id, vault_id, asset, sequence, now)
        batch = Batch(
            batch_id=batch_id,
            vault=vault_id,
            asset=asset,
            sequence=sequence,
            status=BatchStatus.OPEN,
            created_at=now,
            receiver=derive_id("receiver", self.store.config.context_id, batch_id),
        )
        self.store.put_batch(batch)
        self.store.set_open_batch(vault_id, asset, batch_id)
        self.store.emit(EVENT_BATCH_CREATED, batch_id=batch_id, vault=vault_id, asset=asset, sequence=sequence)
        logger.info("Opened batch %s (%s/%s #%d)", batch_id[:12], vault_id, asset, sequence)
        return batch_id

    # ========================================================================
    # QUERIES
    # ========================================================================

    def current_batch(self, vault_id: str, asset: str) -> str:
        """
        Raises:
            InvalidBatchState: If no batch is open for the pair
        """
        batch_id = self.store.open_batch_id(vault_id, asset)
        if batch_id is None:
            raise InvalidBatchState(f"No open batch for {vault_id}/{asset}")
        return batch_id

    def require_open(self, batch_id: str, vault_id: str, asset: str) -> Batch:
        """Return the batch if it is the OPEN batch of (vault, asset)."""
        batch = self.store.get_batch(batch_id)
        if batch.vault != vault_id or batch.asset != asset:
            raise StateError(f"Batch {batch_id} belongs to {batch.vault}/{batch.asset}")
        if not batch.is_open:
            raise InvalidBatchState(f"Batch {batch_id} is {batch.status.value}, not open")
        return batch

    def last_settled_price(self, vault_id: str, asset: str) -> Decimal:
        """Net share price of the latest settled batch; 1 before the first settlement."""
        for batch in reversed(self.store.vault_batches(vault_id, asset)):
            if batch.is_settled:
                return batch.settlement.net_share_price
        return ONE

    def unsettled_predecessor(self, batch: Batch) -> Optional[Batch]:
        """Earliest batch of the same pair with a lower sequence that is not SETTLED."""
        for other in self.store.vault_batches(batch.vault, batch.asset):
            if other.sequence >= batch.sequence:
                break
            if not other.is_settled:
                return other
        return None

    # ========================================================================
    # BOOKKEEPING (router path)
    # ========================================================================

    def record_deposit(self, batch_id: str, vault_id: str, asset: str, amount: Decimal) -> Batch:
        """
        Raises:
            CapExceeded: If the asset's max_mint_per_batch would be exceeded
        """
        batch = self.require_open(batch_id, vault_id, asset)
        cap = self.store.get_asset(asset).max_mint_per_batch
        new_total = batch.deposited + amount
        if cap is not None and new_total > cap:
            raise CapExceeded(f"Batch {batch_id[:12]} deposits {new_total} > cap {cap}")
        updated = replace(batch, deposited=new_total)
        self.store.put_batch(updated)
        return updated

    def record_withdrawal(self, batch_id: str, vault_id: str, asset: str, amount: Decimal) -> Batch:
        """
        Raises:
            CapExceeded: If the asset's max_redeem_per_batch would be exceeded
        """
        batch = self.require_open(batch_id, vault_id, asset)
        cap = self.store.get_asset(asset).max_redeem_per_batch
        new_total = batch.requested + amount
        if cap is not None and new_total > cap:
            raise CapExceeded(f"Batch {batch_id[:12]} redemptions {new_total} > cap {cap}")
        updated = replace(batch, requested=new_total)
        self.store.put_batch(updated)
        return updated

    def record_share_redemption(self, batch_id: str, vault_id: str, asset: str, shares: Decimal) -> Batch:
        """
        Raises:
            CapExceeded: If the queued shares, valued at the last settled net
                price, would exceed the asset's max_redeem_per_batch
        """
        batch = self.require_open(batch_id, vault_id, asset)
        registered = self.store.get_asset(asset)
        new_total = batch.shares_requested + shares
        if registered.max_redeem_per_batch is not None:
            value = fees.convert_to_assets(new_total, self.last_settled_price(vault_id, asset), registered.decimals)
            if value > registered.max_redeem_per_batch:
                raise CapExceeded(
                    f"Batch {batch_id[:12]} share redemptions worth {value} > cap {registered.max_redeem_per_batch}"
                )
        updated = replace(batch, shares_requested=new_total)
        self.store.put_batch(updated)
        return updated

    def release_deposit(self, batch_id: str, vault_id: str, asset: str, amount: Decimal) -> Batch:
        batch = self.require_open(batch_id, vault_id, asset)
        updated = replace(batch, deposited=_release(batch.deposited, amount, "deposited"))
        self.store.put_batch(updated)
        return updated

    def release_withdrawal(self, batch_id: str, vault_id: str, asset: str, amount: Decimal) -> Batch:
        batch = self.require_open(batch_id, vault_id, asset)
        updated = replace(batch, requested=_release(batch.requested, amount, "requested"))
        self.store.put_batch(updated)
        return updated

    def release_share_redemption(self, batch_id: str, vault_id: str, asset: str, shares: Decimal) -> Batch:
        batch = self.require_open(batch_id, vault_id, asset)
        updated = replace(
            batch, shares_requested=_release(batch.shares_requested, shares, "shares_requested")
        )
        self.store.put_batch(updated)
        return updated


def _release(current: Decimal, amount: Decimal, name: str) -> Decimal:
    remaining = current - amount
    if remaining < ZERO:
        raise InvalidBatchState(f"Cannot release {amount}: only {current} {name}")
    return remaining
