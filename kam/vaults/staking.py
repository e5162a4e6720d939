"""
staking.py - Staking vault

Retail holders stake kTokens for vault shares and unstake shares back into
kTokens. Both directions are batched: the price is fixed when the batch
settles and every claim pays at that price.

Token flows:
    request_stake   kTokens burned from owner (their backing moves to the vault)
    request_unstake shares escrowed at the vault
    claim_stake     shares minted to the recipient
    claim_unstake   escrowed shares burned, kTokens minted to the recipient
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any
import logging

from .. import fees
from ..adapters import TokenLedger
from ..batches import BatchLifecycleManager
from ..core import RequestKind, StateError
from ..requests import RequestLedger
from ..router import VirtualBalanceRouter, validate_amount
from ..store import LedgerStore

logger = logging.getLogger(__name__)


class StakingVault:
    """
    Share-issuing vault over one asset, fed by its gateway's kTokens.

    Example:
        vault = StakingVault(store, batches, router, requests, "alpha", kusd, alpha_shares)
        rid = vault.request_stake("alice", "alice", Decimal("100"))
        ...batch closes and settles...
        vault.claim_stake("alice", rid)
    """

    def __init__(
        self,
        store: LedgerStore,
        batches: BatchLifecycleManager,
        router: VirtualBalanceRouter,
        requests: RequestLedger,
        vault_id: str,
        ktoken: TokenLedger,
        shares: TokenLedger,
    ):
        vault = store.get_vault(vault_id)
        if not vault.is_staking:
            raise StateError(f"{vault_id} is not a staking vault")
        self.store = store
        self.batches = batches
        self.router = router
        self.requests = requests
        self.vault_id = vault_id
        self.asset = vault.asset
        self.gateway = vault.gateway
        self.ktoken = ktoken
        self.shares = shares

    # ========================================================================
    # REQUESTS
    # ========================================================================

    def request_stake(self, owner: str, recipient: str, amount: Any) -> str:
        """
        Stake kTokens into the open batch.

        Raises:
            InsufficientBalance: If owner holds too few kTokens or the
                gateway's virtual balance cannot cover the transfer
        """
        value = validate_amount(self.store, self.asset, amount)
        batch_id = self.batches.current_batch(self.vault_id, self.asset)
        with self.store.atomic(), self.store.guard:
            self.router.transfer(self.vault_id, self.gateway, self.vault_id, self.asset, value, batch_id)
            request_id = self.requests.create(
                RequestKind.STAKE, self.vault_id, self.asset, owner, recipient, value, batch_id,
            )
            self.ktoken.burn(owner, value)
        logger.info("%s staked %s %s into %s", owner, value, self.asset, self.vault_id)
        return request_id

    def request_unstake(self, owner: str, recipient: str, shares: Any) -> str:
        """Escrow shares for redemption at the open batch's settled price."""
        value = validate_amount(self.store, self.asset, shares)
        batch_id = self.batches.current_batch(self.vault_id, self.asset)
        with self.store.atomic(), self.store.guard:
            self.router.request_share_pull(self.vault_id, self.vault_id, value, batch_id)
            request_id = self.requests.create(
                RequestKind.UNSTAKE, self.vault_id, self.asset, owner, recipient, value, batch_id,
            )
            self.shares.transfer(owner, self.vault_id, value)
        logger.info("%s unstaking %s shares of %s", owner, value, self.vault_id)
        return request_id

    def cancel_stake(self, caller: str, request_id: str) -> None:
        request = self._own_request(request_id)
        with self.store.atomic(), self.store.guard:
            self.requests.cancel(caller, request_id, RequestKind.STAKE)
            self.router.cancel_transfer(
                self.vault_id, self.gateway, self.vault_id, self.asset, request.amount, request.batch_id,
            )
            self.ktoken.mint(request.requester, request.amount)

    def cancel_unstake(self, caller: str, request_id: str) -> None:
        request = self._own_request(request_id)
        with self.store.atomic(), self.store.guard:
            self.requests.cancel(caller, request_id, RequestKind.UNSTAKE)
            self.router.cancel_share_pull(self.vault_id, self.vault_id, request.amount, request.batch_id)
            self.shares.transfer(self.vault_id, request.requester, request.amount)

    # ========================================================================
    # CLAIMS
    # ========================================================================

    def claim_stake(self, caller: str, request_id: str) -> Decimal:
        """
        Mint shares for a settled stake at its batch's net price.

        Returns:
            Shares minted to the recipient
        """
        request = self._own_request(request_id)
        with self.store.atomic(), self.store.guard:
            minted = self.requests.claim(caller, request_id, RequestKind.STAKE)
            if minted > 0:
                self.shares.mint(request.beneficiary, minted)
        return minted

    def claim_unstake(self, caller: str, request_id: str) -> Decimal:
        """
        Burn escrowed shares and mint kTokens for the assets they returned.

        Returns:
            kTokens minted to the recipient
        """
        request = self._own_request(request_id)
        with self.store.atomic(), self.store.guard:
            assets = self.requests.claim(caller, request_id, RequestKind.UNSTAKE)
            self.shares.burn(self.vault_id, request.amount)
            if assets > 0:
                self.ktoken.mint(request.beneficiary, assets)
        return assets

    def _own_request(self, request_id: str):
        request = self.requests.get(request_id)
        if request.vault != self.vault_id:
            raise StateError(f"Request {request_id} belongs to {request.vault}")
        return request

    # ========================================================================
    # QUOTES
    # ========================================================================

    def share_price(self) -> Decimal:
        """Live gross share price (informational)."""
        return fees.quote_share_price(self.store, self.vault_id).gross_share_price

    def net_share_price(self) -> Decimal:
        """Live net share price after accrued fees (informational)."""
        return fees.quote_share_price(self.store, self.vault_id).net_share_price

    def total_assets(self) -> Decimal:
        """Assets backing the outstanding shares."""
        total_assets, _, _, _ = fees.load_fee_inputs(self.store, self.vault_id)
        return total_assets
