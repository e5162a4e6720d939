"""
system.py - Wiring facade

ProtocolSystem builds one store and one instance of each component around
it, wired by reference, and registers gateways and staking vaults with their
custodians. Tests and simulations use it instead of assembling components
by hand.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from .adapters import CustodialAdapter, InMemoryCustodian, InMemoryToken, TokenLedger
from .batches import BatchLifecycleManager
from .config import ProtocolConfig
from .core import Asset, FeeAccrualState, Vault, VaultKind, StateError
from .registry import CapabilityRegistry, require_capability, ROLE_ADMIN
from .requests import RequestLedger
from .router import VirtualBalanceRouter
from .settlement import SettlementProposalEngine
from .store import LedgerStore
from .vaults import IssuanceGateway, StakingVault

logger = logging.getLogger(__name__)


class ProtocolSystem:
    """
    One fully wired accounting core.

    Example:
        system = ProtocolSystem(RoleRegistry(admin="admin"), ProtocolConfig(context_id="test"))
        system.register_asset("admin", Asset("USDC", decimals=6))
        gateway = system.add_gateway("admin", "gateway")
        gateway.register_token("admin", "USDC", InMemoryToken("kUSD"))
        alpha = system.add_staking_vault("admin", "alpha", "gateway", "USDC")
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        config: Optional[ProtocolConfig] = None,
        initial_time: Optional[datetime] = None,
        treasury_custodian: Optional[CustodialAdapter] = None,
    ):
        self.registry = registry
        self.store = LedgerStore(config, initial_time, treasury_custodian)
        self.batches = BatchLifecycleManager(self.store, registry)
        self.router = VirtualBalanceRouter(self.store, self.batches)
        self.settlement = SettlementProposalEngine(self.store, self.batches, self.router, registry)
        self.requests = RequestLedger(self.store, self.batches)
        self.gateways: Dict[str, IssuanceGateway] = {}
        self.staking_vaults: Dict[str, StakingVault] = {}

    @property
    def config(self) -> ProtocolConfig:
        return self.store.config

    def register_asset(self, caller: str, asset: Asset) -> None:
        require_capability(self.registry, caller, ROLE_ADMIN)
        self.store.register_asset(asset)

    def add_gateway(
        self,
        caller: str,
        vault_id: str,
        custodian: Optional[CustodialAdapter] = None,
    ) -> IssuanceGateway:
        require_capability(self.registry, caller, ROLE_ADMIN)
        self.store.register_vault(Vault(vault_id, VaultKind.GATEWAY), custodian or InMemoryCustodian(vault_id))
        gateway = IssuanceGateway(self.store, self.batches, self.router, self.requests, self.registry, vault_id)
        self.gateways[vault_id] = gateway
        logger.info("Added gateway %s", vault_id)
        return gateway

    def add_staking_vault(
        self,
        caller: str,
        vault_id: str,
        gateway_id: str,
        asset: str,
        kind: VaultKind = VaultKind.PRIMARY,
        custodian: Optional[CustodialAdapter] = None,
        fee_state: Optional[FeeAccrualState] = None,
        shares: Optional[TokenLedger] = None,
    ) -> StakingVault:
        """
        Register a staking vault over the kToken its gateway issues for asset.

        Raises:
            StateError: If gateway_id was not added through add_gateway()
            AssetNotRegistered: If the gateway has no kToken for asset
        """
        require_capability(self.registry, caller, ROLE_ADMIN)
        if gateway_id not in self.gateways:
            raise StateError(f"Unknown gateway {gateway_id}")
        ktoken = self.gateways[gateway_id].token_for(asset)
        self.store.register_vault(
            Vault(vault_id, kind, asset=asset, gateway=gateway_id),
            custodian or InMemoryCustodian(vault_id),
            fee_state,
        )
        vault = StakingVault(
            self.store, self.batches, self.router, self.requests,
            vault_id, ktoken, shares or InMemoryToken(f"{vault_id}-shares"),
        )
        self.staking_vaults[vault_id] = vault
        logger.info("Added %s staking vault %s over %s/%s", kind.value, vault_id, gateway_id, asset)
        return vault

    def advance_time(self, new_time: datetime) -> None:
        self.store.advance_time(new_time)

    def verify_reconciliation(self, assets: Optional[List[str]] = None) -> Dict[str, Any]:
        return self.store.verify_reconciliation(assets)

    def __repr__(self) -> str:
        return (
            f"ProtocolSystem({self.config.context_id}: {len(self.gateways)} gateways, "
            f"{len(self.staking_vaults)} staking vaults)"
        )
