"""
router.py - Virtual Balance Router

Entry point gateways and staking vaults call to push value into, or request
value out of, the virtual ledger. Request-time calls only update bookkeeping;
real funds move exclusively through settlement_transfer(), which only the
settlement engine may invoke and only while the store's reentrancy guard is
held.

Operations:
    push               - real funds arrived, credit the vault now
    request_pull       - queue a withdrawal, debited at settlement
    transfer           - virtual move from a gateway to one of its staking vaults
    request_share_pull - queue staking-vault shares for redemption
    cancel_*           - undo any of the above while the batch is still open
    settlement_transfer- physical movement between custodians at settlement
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any
import logging

from .batches import BatchLifecycleManager
from .core import (
    VaultKind, ZERO,
    EVENT_ASSET_PUSHED, EVENT_PULL_REQUESTED, EVENT_PULL_CANCELLED,
    EVENT_ASSET_TRANSFERRED, EVENT_TRANSFER_CANCELLED,
    EVENT_SHARES_PULL_REQUESTED, EVENT_SHARES_PULL_CANCELLED, EVENT_SETTLEMENT_TRANSFER,
    AuthorizationError, BoundsError, InsufficientBalance, ReentrancyError, StateError,
    ZeroAmount, to_decimal,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)


def validate_amount(store: LedgerStore, asset: str, amount: Any) -> Decimal:
    """
    Convert and check a request amount.

    Raises:
        ZeroAmount: If the amount is zero or negative
        BoundsError: If the amount has more precision than the asset
    """
    value = to_decimal(amount)
    if value <= 0:
        raise ZeroAmount(f"Amount must be positive, got {value}")
    if store.get_asset(asset).quantize(value) != value:
        raise BoundsError(f"Amount {value} exceeds {asset} precision")
    return value


class VirtualBalanceRouter:
    """
    Bookkeeping entry point for vault value flows.

    Callers identify themselves by vault id; a vault may only move its own
    balances. Every operation is atomic.

    Example:
        router.push("gateway", "gateway", "USDC", Decimal("100"), batch_id)
        router.get_virtual_balance("gateway", "USDC")   # Decimal("100")
    """

    def __init__(self, store: LedgerStore, batches: BatchLifecycleManager):
        self.store = store
        self.batches = batches

    def _require_self(self, caller: str, vault_id: str) -> None:
        self.store.get_vault(vault_id)
        if caller != vault_id:
            raise AuthorizationError(f"{caller} cannot act for vault {vault_id}")

    def _check_queued_pulls(self, vault_id: str, asset: str) -> None:
        """Pulls queued in unsettled batches may never exceed the virtual balance."""
        queued = sum(
            (b.requested for b in self.store.vault_batches(vault_id, asset) if not b.is_settled),
            ZERO,
        )
        balance = self.store.get_balance(vault_id, asset)
        if queued > balance:
            raise InsufficientBalance(
                f"{vault_id} {asset}: queued pulls {queued} exceed virtual balance {balance}"
            )

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_virtual_balance(self, vault_id: str, asset: str) -> Decimal:
        return self.store.get_balance(vault_id, asset)

    # ========================================================================
    # REQUEST-TIME BOOKKEEPING
    # ========================================================================

    def push(self, caller: str, vault_id: str, asset: str, amount: Any, batch_id: str) -> Decimal:
        """
        Attribute funds already received to the vault's open batch.

        Must be called exactly once per real transfer.

        Returns:
            The vault's new virtual balance

        Raises:
            ZeroAmount: If amount is zero
            CapExceeded: If the batch mint cap would be exceeded
            InvalidBatchState: If batch_id is not the vault's open batch
        """
        self._require_self(caller, vault_id)
        value = validate_amount(self.store, asset, amount)
        with self.store.atomic():
            self.batches.record_deposit(batch_id, vault_id, asset, value)
            balance = self.store.adjust_balance(vault_id, asset, value)
            self.store.emit(EVENT_ASSET_PUSHED, vault=vault_id, asset=asset, amount=value, batch_id=batch_id)
            logger.debug("push %s %s -> %s (batch %s)", value, asset, vault_id, batch_id[:12])
            return balance

    def request_pull(self, caller: str, vault_id: str, asset: str, amount: Any, batch_id: str) -> None:
        """
        Queue a withdrawal against the vault's open batch.

        The virtual balance is debited at settlement, not now, so the batch
        window never double counts. Queued pulls may not exceed the balance.

        Raises:
            ZeroAmount: If amount is zero
            CapExceeded: If the batch redeem cap would be exceeded
            InsufficientBalance: If queued pulls would exceed the virtual balance
        """
        self._require_self(caller, vault_id)
        value = validate_amount(self.store, asset, amount)
        with self.store.atomic():
            batch = self.batches.record_withdrawal(batch_id, vault_id, asset, value)
            self._check_queued_pulls(vault_id, asset)
            self.store.emit(EVENT_PULL_REQUESTED, vault=vault_id, asset=asset, amount=value, batch_id=batch.batch_id)

    def cancel_pull(self, caller: str, vault_id: str, asset: str, amount: Any, batch_id: str) -> None:
        self._require_self(caller, vault_id)
        value = validate_amount(self.store, asset, amount)
        with self.store.atomic():
            self.batches.release_withdrawal(batch_id, vault_id, asset, value)
            self.store.emit(EVENT_PULL_CANCELLED, vault=vault_id, asset=asset, amount=value, batch_id=batch_id)

    def transfer(
        self,
        caller: str,
        source_vault: str,
        target_vault: str,
        asset: str,
        amount: Any,
        batch_id: str,
    ) -> None:
        """
        Move virtual value from a gateway to one of its staking vaults.

        Both balances change now; the real funds stay with the gateway's
        custodian until the staking vault's batch settles.

        Raises:
            AuthorizationError: If caller is not the target vault
            StateError: If the target does not take intake from the source
            InsufficientBalance: If the gateway's virtual balance is too small
        """
        self._require_self(caller, target_vault)
        target = self.store.get_vault(target_vault)
        source = self.store.get_vault(source_vault)
        if not target.is_staking or target.gateway != source_vault or source.kind is not VaultKind.GATEWAY:
            raise StateError(f"{target_vault} does not take intake from {source_vault}")
        value = validate_amount(self.store, asset, amount)
        with self.store.atomic():
            self.batches.record_deposit(batch_id, target_vault, asset, value)
            self.store.adjust_balance(source_vault, asset, -value)
            self.store.adjust_balance(target_vault, asset, value)
            self.store.add_pending_transfer(asset, source_vault, target_vault, value)
            self._check_queued_pulls(source_vault, asset)
            self.store.emit(
                EVENT_ASSET_TRANSFERRED,
                source=source_vault, target=target_vault, asset=asset, amount=value, batch_id=batch_id,
            )

    def cancel_transfer(
        self,
        caller: str,
        source_vault: str,
        target_vault: str,
        asset: str,
        amount: Any,
        batch_id: str,
    ) -> None:
        """
        Undo a transfer while its batch is open. The real funds are still
        with the source: settlement only delivers a batch's own intake.
        """
        self._require_self(caller, target_vault)
        value = validate_amount(self.store, asset, amount)
        with self.store.atomic():
            self.batches.release_deposit(batch_id, target_vault, asset, value)
            self.store.adjust_balance(target_vault, asset, -value)
            self.store.adjust_balance(source_vault, asset, value)
            self.store.add_pending_transfer(asset, source_vault, target_vault, -value)
            self.store.emit(
                EVENT_TRANSFER_CANCELLED,
                source=source_vault, target=target_vault, asset=asset, amount=value, batch_id=batch_id,
            )

    def request_share_pull(self, caller: str, vault_id: str, shares: Any, batch_id: str) -> None:
        """Queue staking-vault shares for redemption at the batch's settled price."""
        self._require_self(caller, vault_id)
        vault = self.store.get_vault(vault_id)
        if not vault.is_staking:
            raise StateError(f"{vault_id} does not issue shares")
        value = validate_amount(self.store, vault.asset, shares)
        with self.store.atomic():
            self.batches.record_share_redemption(batch_id, vault_id, vault.asset, value)
            self.store.emit(EVENT_SHARES_PULL_REQUESTED, vault=vault_id, shares=value, batch_id=batch_id)

    def cancel_share_pull(self, caller: str, vault_id: str, shares: Any, batch_id: str) -> None:
        self._require_self(caller, vault_id)
        vault = self.store.get_vault(vault_id)
        value = validate_amount(self.store, vault.asset, shares)
        with self.store.atomic():
            self.batches.release_share_redemption(batch_id, vault_id, vault.asset, value)
            self.store.emit(EVENT_SHARES_PULL_CANCELLED, vault=vault_id, shares=value, batch_id=batch_id)

    # ========================================================================
    # SETTLEMENT-TIME MOVEMENT
    # ========================================================================

    def settlement_transfer(
        self,
        vault_id: str,
        asset: str,
        amount: Decimal,
        destination: str,
        authority: Any,
    ) -> None:
        """
        Physically move funds out of a vault's custodian.

        If destination is a registered vault, its custodian receives the
        funds; otherwise destination is a batch receiver outside custody.

        Raises:
            AuthorizationError: If authority is not the settlement engine
            ReentrancyError: If called without the store's guard held
        """
        self.batches.require_settlement_authority(authority)
        if not self.store.guard.locked:
            raise ReentrancyError("settlement_transfer requires the reentrancy guard")
        value = to_decimal(amount)
        if value <= 0:
            raise ZeroAmount(f"Settlement transfer must be positive, got {value}")
        self.store.get_custodian(vault_id).pull(asset, value)
        if destination in self.store.vaults:
            self.store.get_custodian(destination).deposit(asset, value)
        self.store.emit(
            EVENT_SETTLEMENT_TRANSFER, vault=vault_id, asset=asset, amount=value, destination=destination,
        )
        logger.info("Settlement transfer %s %s: %s -> %s", value, asset, vault_id, destination[:12])
