"""
Core types and pure functions for the settlement accounting core.

This module provides the foundational data structures shared by every component:
1. Constants: basis-point denominators, year length, reserved vault ids, event kinds
2. Enums: vault kinds and the batch / proposal / request state machines
3. Exceptions: LedgerError and the authorization / state / bounds / reconciliation taxonomy
4. Immutable records: Asset, Vault, Batch, BatchSettlement, SettlementProposal,
   Request, FeeAccrualState, LedgerEvent
5. Identifier derivation: canonical serialization + SHA-256

All records are frozen. Components never edit a record in place; they build a
replacement with dataclasses.replace() and hand it to the LedgerStore.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN, getcontext
from enum import Enum
import hashlib
from typing import Any, Dict, Optional, Tuple


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Settlement math must be deterministic across processes, so the global
# context is pinned at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
#
_KAM_DECIMAL_CONTEXT = getcontext()
_KAM_DECIMAL_CONTEXT.prec = 50
_KAM_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

ZERO = Decimal("0")
ONE = Decimal("1")

# 10,000 bps = 100%
BPS_DENOMINATOR = Decimal("10000")
MAX_BPS = 10_000

# 365 days; fee and hurdle accrual is prorated per second against this.
SECONDS_PER_YEAR = 31_536_000

# Share prices are carried with 18 decimal places.
PRICE_DECIMALS = 18

# Reserved vault that receives crystallized fees. Auto-registered by the store.
TREASURY_VAULT = "treasury"

# Event kinds written to the store's event log.
EVENT_VAULT_REGISTERED = "VaultRegistered"
EVENT_BATCH_CREATED = "BatchCreated"
EVENT_BATCH_CLOSED = "BatchClosed"
EVENT_BATCH_SETTLED = "BatchSettled"
EVENT_ASSET_PUSHED = "AssetPushed"
EVENT_PULL_REQUESTED = "PullRequested"
EVENT_PULL_CANCELLED = "PullCancelled"
EVENT_ASSET_TRANSFERRED = "AssetTransferred"
EVENT_TRANSFER_CANCELLED = "TransferCancelled"
EVENT_SHARES_PULL_REQUESTED = "SharesPullRequested"
EVENT_SHARES_PULL_CANCELLED = "SharesPullCancelled"
EVENT_SETTLEMENT_TRANSFER = "SettlementTransfer"
EVENT_PROPOSAL_CREATED = "SettlementProposed"
EVENT_PROPOSAL_REJECTED = "SettlementRejected"
EVENT_PROPOSAL_EXECUTED = "SettlementExecuted"
EVENT_COOLDOWN_BOUNDS_UPDATED = "CooldownBoundsUpdated"
EVENT_REQUEST_CREATED = "RequestCreated"
EVENT_REQUEST_CANCELLED = "RequestCancelled"
EVENT_REQUEST_CLAIMED = "RequestClaimed"
EVENT_RECEIVER_PAYOUT = "ReceiverPayout"


# ============================================================================
# ENUMS
# ============================================================================

class VaultKind(Enum):
    """
    Variant of a vault holding virtual balances.

    GATEWAY: institutional issuance / redemption (1:1 wrapped tokens)
    PRIMARY: delta-neutral staking vault
    SATELLITE: alternative-strategy staking vault
    TREASURY: fee collection account, registered automatically
    """
    GATEWAY = "gateway"
    PRIMARY = "primary"
    SATELLITE = "satellite"
    TREASURY = "treasury"


class BatchStatus(Enum):
    """Batch state machine: OPEN -> CLOSED -> SETTLED (terminal)."""
    OPEN = "open"
    CLOSED = "closed"
    SETTLED = "settled"


class ProposalStatus(Enum):
    """
    Settlement proposal state machine.

    PROPOSED: stored, cooldown running (or elapsed but not executed)
    ACCEPTED: derived state - cooldown elapsed with no veto
    REJECTED: vetoed by a guardian; the record is deleted from the store
    EXECUTED: terminal
    """
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXECUTED = "executed"


class RequestKind(Enum):
    STAKE = "stake"
    UNSTAKE = "unstake"
    BURN = "burn"


class RequestStatus(Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    REDEEMED = "redeemed"
    CANCELLED = "cancelled"


_BATCH_ORDER = {BatchStatus.OPEN: 0, BatchStatus.CLOSED: 1, BatchStatus.SETTLED: 2}


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all settlement-core errors."""
    pass


class AuthorizationError(LedgerError):
    """Raised when the caller lacks the capability an operation requires."""
    pass


class StateError(LedgerError):
    """Raised when an operation is invalid for the current record state."""
    pass


class InvalidBatchState(StateError):
    pass


class InvalidProposalState(StateError):
    pass


class InvalidRequestState(StateError):
    pass


class LiveProposalExists(InvalidProposalState):
    """Raised when a batch already has a proposal awaiting execution."""
    pass


class TimelockActive(InvalidProposalState):
    """Raised when a proposal is executed before its cooldown has elapsed."""
    pass


class VetoWindowClosed(InvalidProposalState):
    """Raised when a guardian tries to reject after the cooldown has elapsed."""
    pass


class BatchNotFound(StateError):
    pass


class ProposalNotFound(StateError):
    pass


class RequestNotFound(StateError):
    pass


class AssetNotRegistered(StateError):
    pass


class VaultNotRegistered(StateError):
    pass


class BoundsError(LedgerError):
    """Raised when an amount is zero, exceeds a cap, or exceeds availability."""
    pass


class ZeroAmount(BoundsError):
    pass


class CapExceeded(BoundsError):
    pass


class InsufficientBalance(BoundsError):
    pass


class CooldownOutOfBounds(BoundsError):
    pass


class ReconciliationError(LedgerError):
    """Raised when a settlement would break the non-negative virtual balance invariant."""
    pass


class ReentrancyError(LedgerError):
    """Raised when an external call re-enters a locked operation."""
    pass


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert a numeric input to a finite Decimal.

    Floats go through str() so that 0.1 becomes Decimal("0.1"), not its
    binary expansion.
    """
    if isinstance(value, bool):
        raise ValueError("Boolean is not a valid amount")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value.is_nan() or value.is_infinite():
        raise ValueError(f"Amount must be finite, got {value}")
    return value


def quantize_price(value: Decimal) -> Decimal:
    """Round a share price down to PRICE_DECIMALS places."""
    return value.quantize(Decimal(10) ** -PRICE_DECIMALS, rounding=ROUND_DOWN)


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Asset:
    """
    A registered collateral / unit type.

    Attributes:
        symbol: Stable key (e.g. "USDC", "WBTC").
        decimals: Precision of amounts in this asset.
        max_mint_per_batch: Cap on deposits recorded against one batch (None = unlimited).
        max_redeem_per_batch: Cap on withdrawals recorded against one batch (None = unlimited).
        hurdle_rate_bps: Annualized hurdle applied to performance fees of vaults holding it.
    """
    symbol: str
    decimals: int = 6
    max_mint_per_batch: Optional[Decimal] = None
    max_redeem_per_batch: Optional[Decimal] = None
    hurdle_rate_bps: int = 0

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Asset symbol cannot be empty")
        if not 0 <= self.decimals <= PRICE_DECIMALS:
            raise ValueError(f"Asset decimals must be in [0, {PRICE_DECIMALS}], got {self.decimals}")
        if not 0 <= self.hurdle_rate_bps <= MAX_BPS:
            raise ValueError(f"hurdle_rate_bps must be in [0, {MAX_BPS}], got {self.hurdle_rate_bps}")
        for name in ("max_mint_per_batch", "max_redeem_per_batch"):
            cap = getattr(self, name)
            if cap is None:
                continue
            cap = to_decimal(cap)
            if cap < 0:
                raise ValueError(f"{name} cannot be negative, got {cap}")
            object.__setattr__(self, name, cap)

    @property
    def base_unit(self) -> Decimal:
        """Smallest representable amount of this asset."""
        return Decimal(10) ** -self.decimals

    def quantize(self, value: Decimal, rounding: str = ROUND_DOWN) -> Decimal:
        return value.quantize(self.base_unit, rounding=rounding)


@dataclass(frozen=True, slots=True)
class Vault:
    """
    An entity holding virtual balances.

    Attributes:
        vault_id: Stable key.
        kind: GATEWAY, PRIMARY, SATELLITE or TREASURY.
        asset: The single asset of a staking vault. None for gateways and the
               treasury, which hold any registered asset.
        gateway: The gateway a staking vault takes intake from and returns to.
    """
    vault_id: str
    kind: VaultKind
    asset: Optional[str] = None
    gateway: Optional[str] = None

    def __post_init__(self):
        if not self.vault_id or not self.vault_id.strip():
            raise ValueError("Vault id cannot be empty")
        if self.is_staking:
            if not self.asset:
                raise ValueError(f"Staking vault {self.vault_id} requires an asset")
            if not self.gateway:
                raise ValueError(f"Staking vault {self.vault_id} requires a gateway")
            if self.gateway == self.vault_id:
                raise ValueError("A staking vault cannot be its own gateway")
        elif self.gateway is not None:
            raise ValueError(f"{self.kind.value} vault {self.vault_id} cannot have a gateway")

    @property
    def is_staking(self) -> bool:
        return self.kind in (VaultKind.PRIMARY, VaultKind.SATELLITE)

    def holds(self, asset: str) -> bool:
        return self.asset is None or self.asset == asset


@dataclass(frozen=True, slots=True)
class BatchSettlement:
    """
    Figures fixed when a batch settles. Claims are always paid from these,
    never from a live price.
    """
    proposal_id: str
    total_assets: Decimal
    yield_amount: Decimal
    fees_charged: Decimal
    gross_share_price: Decimal
    net_share_price: Decimal
    shares_issued: Decimal
    assets_returned: Decimal


@dataclass(frozen=True, slots=True)
class Batch:
    """
    A bounded collection window for one (vault, asset) pair.

    deposited / requested are asset amounts recorded while the batch was open;
    shares_requested is the staking-vault share count queued for redemption.
    receiver is the settlement receiver that holds redeemed assets for claims.
    """
    batch_id: str
    vault: str
    asset: str
    sequence: int
    status: BatchStatus
    created_at: datetime
    receiver: str
    deposited: Decimal = ZERO
    requested: Decimal = ZERO
    shares_requested: Decimal = ZERO
    closed_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    settlement: Optional[BatchSettlement] = None

    @property
    def is_open(self) -> bool:
        return self.status is BatchStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status is BatchStatus.CLOSED

    @property
    def is_settled(self) -> bool:
        return self.status is BatchStatus.SETTLED

    def can_transition_to(self, target: BatchStatus) -> bool:
        """Transitions are strictly forward and one step at a time."""
        return _BATCH_ORDER[target] == _BATCH_ORDER[self.status] + 1


@dataclass(frozen=True, slots=True)
class SettlementProposal:
    """Relayer-submitted statement of a closed batch's final asset total."""
    proposal_id: str
    batch_id: str
    vault: str
    asset: str
    proposed_total_assets: Decimal
    created_at: datetime
    cooldown_seconds: int
    proposer: str
    status: ProposalStatus = ProposalStatus.PROPOSED
    executed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.proposed_total_assets < 0:
            raise ValueError("proposed_total_assets cannot be negative")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds cannot be negative")

    @property
    def executable_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.cooldown_seconds)

    def status_at(self, now: datetime) -> ProposalStatus:
        """Stored status, with ACCEPTED derived once the cooldown has elapsed."""
        if self.status is ProposalStatus.PROPOSED and now >= self.executable_at:
            return ProposalStatus.ACCEPTED
        return self.status


@dataclass(frozen=True, slots=True)
class Request:
    """
    A user stake / unstake / burn request bound to one batch.

    amount is in assets for STAKE and BURN requests and in vault shares for
    UNSTAKE requests.
    """
    request_id: str
    kind: RequestKind
    vault: str
    asset: str
    requester: str
    beneficiary: str
    amount: Decimal
    batch_id: str
    created_at: datetime
    status: RequestStatus = RequestStatus.PENDING
    payout: Optional[Decimal] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.requester or not self.beneficiary:
            raise ValueError("Request requester and beneficiary cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Request amount must be positive, got {self.amount}")

    @property
    def is_terminal(self) -> bool:
        return self.status is not RequestStatus.PENDING


@dataclass(frozen=True, slots=True)
class FeeAccrualState:
    """
    Per-vault fee configuration and accrual checkpoints.

    watermark is the highest settled net share price; it is never lowered.
    """
    last_management_fee_at: datetime
    last_performance_fee_at: datetime
    watermark: Decimal = ONE
    management_fee_bps: int = 0
    performance_fee_bps: int = 0
    hurdle_rate_bps: int = 0
    hard_hurdle: bool = True

    def __post_init__(self):
        for name in ("management_fee_bps", "performance_fee_bps", "hurdle_rate_bps"):
            value = getattr(self, name)
            if not 0 <= value <= MAX_BPS:
                raise ValueError(f"{name} must be in [0, {MAX_BPS}], got {value}")
        if not isinstance(self.watermark, Decimal):
            object.__setattr__(self, 'watermark', to_decimal(self.watermark))
        if self.watermark <= 0:
            raise ValueError("watermark must be positive")


@dataclass(frozen=True, slots=True)
class LedgerEvent:
    """Append-only log entry. payload is a sorted tuple of (key, value) pairs."""
    sequence: int
    kind: str
    timestamp: datetime
    payload: Tuple[Tuple[str, Any], ...]
    event_id: str

    @property
    def payload_dict(self) -> Dict[str, Any]:
        return dict(self.payload)


# ============================================================================
# IDENTIFIERS
# ============================================================================

def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Independent of dict insertion order and Decimal representation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    raise TypeError(f"Cannot canonicalize value of type {type(value).__name__}")


def derive_id(domain: str, *parts: Any) -> str:
    """
    Derive a fixed-width identifier from a domain salt and ordered parts.

    Pure and side-effect free: the same (domain, parts) always yields the same
    64-character hex id, so batch and request history can be rebuilt from the
    event log.

    Example:
        derive_id("batch", "mainnet", "vault-a", "USDC", 7, datetime(2025, 1, 1))
    """
    if not domain:
        raise ValueError("domain cannot be empty")
    content = "|".join([f"domain:{domain}"] + [_canonicalize(p) for p in parts])
    return hashlib.sha256(content.encode()).hexdigest()
