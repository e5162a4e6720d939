"""
gateway.py - Issuance gateway

Institutions deposit collateral and receive kTokens 1:1; redemptions are
batched and paid out by the batch receiver once the gateway's batch settles.

    deposit         -> custodian receives funds, router.push, kTokens minted
    request_redeem  -> kTokens escrowed, router.request_pull, BURN request
    cancel_redeem   -> undo while the batch is open
    finalize_redeem -> after settlement: receiver pays, escrowed kTokens burn
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict
import logging

from ..adapters import TokenLedger
from ..batches import BatchLifecycleManager
from ..core import (
    RequestKind, VaultKind,
    EVENT_RECEIVER_PAYOUT,
    AssetNotRegistered, StateError,
)
from ..registry import CapabilityRegistry, require_capability, ROLE_ADMIN, ROLE_INSTITUTION
from ..requests import RequestLedger
from ..router import VirtualBalanceRouter, validate_amount
from ..store import LedgerStore

logger = logging.getLogger(__name__)


class IssuanceGateway:
    """
    Institutional entry point for one gateway vault.

    Every operation that touches the custodian or a token ledger holds the
    store's reentrancy guard, and finishes its bookkeeping before the
    external call.

    Example:
        gateway = IssuanceGateway(store, batches, router, requests, registry, "gateway")
        gateway.register_token("admin", "USDC", InMemoryToken("kUSD"))
        gateway.deposit("inst", "USDC", Decimal("100"), "inst")
    """

    def __init__(
        self,
        store: LedgerStore,
        batches: BatchLifecycleManager,
        router: VirtualBalanceRouter,
        requests: RequestLedger,
        registry: CapabilityRegistry,
        vault_id: str,
    ):
        vault = store.get_vault(vault_id)
        if vault.kind is not VaultKind.GATEWAY:
            raise StateError(f"{vault_id} is not a gateway vault")
        self.store = store
        self.batches = batches
        self.router = router
        self.requests = requests
        self.registry = registry
        self.vault_id = vault_id
        self.tokens: Dict[str, TokenLedger] = {}

    def register_token(self, caller: str, asset: str, token: TokenLedger) -> None:
        """Attach the kToken issued against an asset."""
        require_capability(self.registry, caller, ROLE_ADMIN)
        self.store.get_asset(asset)
        if asset in self.tokens:
            raise ValueError(f"{asset} already has a kToken ({self.tokens[asset].symbol})")
        self.tokens[asset] = token
        logger.info("Gateway %s issues %s against %s", self.vault_id, token.symbol, asset)

    def token_for(self, asset: str) -> TokenLedger:
        if asset not in self.tokens:
            raise AssetNotRegistered(f"No kToken registered for {asset} on {self.vault_id}")
        return self.tokens[asset]

    # ========================================================================
    # ISSUANCE
    # ========================================================================

    def deposit(self, caller: str, asset: str, amount: Any, beneficiary: str) -> Decimal:
        """
        Accept collateral and mint kTokens 1:1 to beneficiary.

        Returns:
            The minted amount

        Raises:
            AuthorizationError: If caller is not an institution
            CapExceeded: If the open batch's mint cap would be exceeded
        """
        require_capability(self.registry, caller, ROLE_INSTITUTION)
        value = validate_amount(self.store, asset, amount)
        token = self.token_for(asset)
        batch_id = self.batches.current_batch(self.vault_id, asset)
        with self.store.atomic(), self.store.guard:
            self.router.push(self.vault_id, self.vault_id, asset, value, batch_id)
            self.store.get_custodian(self.vault_id).deposit(asset, value)
            token.mint(beneficiary, value)
        logger.info("%s deposited %s %s, minted %s to %s", caller, value, asset, token.symbol, beneficiary)
        return value

    # ========================================================================
    # REDEMPTION
    # ========================================================================

    def request_redeem(self, caller: str, asset: str, amount: Any, beneficiary: str) -> str:
        """
        Escrow kTokens and queue a redemption in the open batch.

        Returns:
            The BURN request id

        Raises:
            AuthorizationError: If caller is not an institution
            InsufficientBalance: If caller holds too few kTokens, or queued
                pulls would exceed the gateway's virtual balance
        """
        require_capability(self.registry, caller, ROLE_INSTITUTION)
        value = validate_amount(self.store, asset, amount)
        token = self.token_for(asset)
        batch_id = self.batches.current_batch(self.vault_id, asset)
        with self.store.atomic(), self.store.guard:
            self.router.request_pull(self.vault_id, self.vault_id, asset, value, batch_id)
            request_id = self.requests.create(
                RequestKind.BURN, self.vault_id, asset, caller, beneficiary, value, batch_id,
            )
            token.transfer(caller, self.vault_id, value)
        return request_id

    def cancel_redeem(self, caller: str, request_id: str) -> None:
        request = self._own_request(request_id)
        token = self.token_for(request.asset)
        with self.store.atomic(), self.store.guard:
            self.requests.cancel(caller, request_id, RequestKind.BURN)
            self.router.cancel_pull(self.vault_id, self.vault_id, request.asset, request.amount, request.batch_id)
            token.transfer(self.vault_id, request.requester, request.amount)

    def finalize_redeem(self, caller: str, request_id: str) -> Decimal:
        """
        Pay a redemption out of its batch receiver and burn the escrow.

        Returns:
            Assets paid to the beneficiary

        Raises:
            InvalidRequestState: If the batch has not settled or the request is terminal
        """
        request = self._own_request(request_id)
        token = self.token_for(request.asset)
        with self.store.atomic(), self.store.guard:
            payout = self.requests.claim(caller, request_id, RequestKind.BURN)
            receiver = self.store.get_batch(request.batch_id).receiver
            self.store.adjust_receiver_balance(receiver, request.asset, -payout)
            self.store.emit(
                EVENT_RECEIVER_PAYOUT,
                receiver=receiver, beneficiary=request.beneficiary, asset=request.asset,
                amount=payout, request_id=request_id,
            )
            token.burn(self.vault_id, request.amount)
        logger.info("Redeemed %s %s to %s", payout, request.asset, request.beneficiary)
        return payout

    def _own_request(self, request_id: str):
        request = self.requests.get(request_id)
        if request.vault != self.vault_id:
            raise StateError(f"Request {request_id} belongs to {request.vault}")
        return request
