"""
kam - Settlement and virtual-balance accounting core

Batches institutional and retail requests into settlement windows, tracks
virtual ownership of asset value across vaults, and reconciles it against
custodied funds through a propose / timelock / veto / execute protocol.

Usage:
    from datetime import timedelta
    from decimal import Decimal
    from kam import ProtocolSystem, ProtocolConfig, RoleRegistry, Asset, InMemoryToken
    from kam import ROLE_RELAYER, ROLE_INSTITUTION

    registry = RoleRegistry(admin="admin", roles={
        ROLE_RELAYER: ["relayer"], ROLE_INSTITUTION: ["inst"],
    })
    system = ProtocolSystem(registry, ProtocolConfig(context_id="demo"))
    system.register_asset("admin", Asset("USDC", decimals=6))
    gateway = system.add_gateway("admin", "gateway")
    gateway.register_token("admin", "USDC", InMemoryToken("kUSD"))

    batch_id = system.batches.create_batch("relayer", "gateway", "USDC")
    gateway.deposit("inst", "USDC", Decimal("100"), "inst")
    system.batches.close_batch("relayer", batch_id, create_next=True)

    pid = system.settlement.propose_reported("relayer", batch_id)
    system.advance_time(system.store.current_time + timedelta(hours=1))
    system.settlement.execute("relayer", pid)
    assert system.verify_reconciliation()['valid']
"""

# Core types
from .core import (
    Asset,
    Vault,
    VaultKind,
    Batch,
    BatchStatus,
    BatchSettlement,
    SettlementProposal,
    ProposalStatus,
    Request,
    RequestKind,
    RequestStatus,
    FeeAccrualState,
    LedgerEvent,
    derive_id,
    to_decimal,
    quantize_price,
    ZERO,
    ONE,
    BPS_DENOMINATOR,
    SECONDS_PER_YEAR,
    TREASURY_VAULT,
)

# Errors
from .core import (
    LedgerError,
    AuthorizationError,
    StateError,
    InvalidBatchState,
    InvalidProposalState,
    InvalidRequestState,
    LiveProposalExists,
    TimelockActive,
    VetoWindowClosed,
    BatchNotFound,
    ProposalNotFound,
    RequestNotFound,
    AssetNotRegistered,
    VaultNotRegistered,
    BoundsError,
    ZeroAmount,
    CapExceeded,
    InsufficientBalance,
    CooldownOutOfBounds,
    ReconciliationError,
    ReentrancyError,
)

# Configuration and collaborators
from .config import ProtocolConfig
from .registry import (
    CapabilityRegistry,
    RoleRegistry,
    require_capability,
    ROLE_ADMIN,
    ROLE_RELAYER,
    ROLE_GUARDIAN,
    ROLE_OPERATOR,
    ROLE_INSTITUTION,
)
from .adapters import CustodialAdapter, InMemoryCustodian, TokenLedger, InMemoryToken

# Components
from .store import LedgerStore, ReentrancyGuard
from .batches import BatchLifecycleManager
from .router import VirtualBalanceRouter
from .settlement import SettlementProposalEngine, SettlementResult
from .requests import RequestLedger
from .fees import (
    AccruedFees,
    BatchPricing,
    calculate_management_fee,
    calculate_hurdle_return,
    calculate_performance_fee,
    compute_accrued_fees,
    gross_share_price,
    net_share_price,
    price_batch,
    advance_fee_state,
    convert_to_shares,
    convert_to_assets,
    load_fee_inputs,
    quote_share_price,
)
from .vaults import IssuanceGateway, StakingVault
from .system import ProtocolSystem

__version__ = "1.0.0"

__all__ = [
    # Core types
    'Asset', 'Vault', 'VaultKind', 'Batch', 'BatchStatus', 'BatchSettlement',
    'SettlementProposal', 'ProposalStatus', 'Request', 'RequestKind', 'RequestStatus',
    'FeeAccrualState', 'LedgerEvent', 'derive_id', 'to_decimal', 'quantize_price',
    'ZERO', 'ONE', 'BPS_DENOMINATOR', 'SECONDS_PER_YEAR', 'TREASURY_VAULT',
    # Errors
    'LedgerError', 'AuthorizationError', 'StateError', 'InvalidBatchState',
    'InvalidProposalState', 'InvalidRequestState', 'LiveProposalExists', 'TimelockActive',
    'VetoWindowClosed', 'BatchNotFound', 'ProposalNotFound', 'RequestNotFound',
    'AssetNotRegistered', 'VaultNotRegistered', 'BoundsError', 'ZeroAmount', 'CapExceeded',
    'InsufficientBalance', 'CooldownOutOfBounds', 'ReconciliationError', 'ReentrancyError',
    # Configuration and collaborators
    'ProtocolConfig', 'CapabilityRegistry', 'RoleRegistry', 'require_capability',
    'ROLE_ADMIN', 'ROLE_RELAYER', 'ROLE_GUARDIAN', 'ROLE_OPERATOR', 'ROLE_INSTITUTION',
    'CustodialAdapter', 'InMemoryCustodian', 'TokenLedger', 'InMemoryToken',
    # Components
    'LedgerStore', 'ReentrancyGuard', 'BatchLifecycleManager', 'VirtualBalanceRouter',
    'SettlementProposalEngine', 'SettlementResult', 'RequestLedger',
    'AccruedFees', 'BatchPricing', 'calculate_management_fee', 'calculate_hurdle_return',
    'calculate_performance_fee', 'compute_accrued_fees', 'gross_share_price',
    'net_share_price', 'price_batch', 'advance_fee_state', 'convert_to_shares',
    'convert_to_assets', 'load_fee_inputs', 'quote_share_price',
    'IssuanceGateway', 'StakingVault', 'ProtocolSystem',
]
