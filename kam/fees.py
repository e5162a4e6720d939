"""
fees.py - Fee & Share-Price Engine

Computes staking-vault share prices and accrues management and performance
fees using a pure function architecture with explicit inputs.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit results):
   - AccruedFees: management + performance fee owed at a point in time
   - BatchPricing: gross / net share price and the fees behind them

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take all inputs explicitly as parameters
   - No LedgerStore, no hidden state
   - Example: calculate_management_fee(assets, bps, elapsed, year) -> Decimal

3. COMPOSITE FUNCTIONS (compute_accrued_fees, price_batch, advance_fee_state):
   - Combine the calculations over a FeeAccrualState snapshot

4. ADAPTER FUNCTIONS (load_fee_inputs, quote_share_price):
   - The ONLY place that reads a vault's state from the LedgerStore

Key Formulas:
    management_fee = assets * mgmt_bps * elapsed / seconds_per_year / 10000
    watermark_value = supply * watermark
    hurdle_return = watermark_value * hurdle_bps * elapsed / seconds_per_year / 10000
    performance_fee = applicable_return * perf_bps / 10000
    gross_price = (assets + va) / (supply + vs)
    net_price = (assets - fees + va) / (supply + vs), never below zero

va and vs are the virtual assets / virtual shares offset: one base unit of the
vault asset times config.virtual_offset on both sides, which makes donation
(first-depositor inflation) attacks cost far more than they can extract.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Tuple

from .config import ProtocolConfig
from .core import (
    ZERO, BPS_DENOMINATOR,
    FeeAccrualState, ReconciliationError,
    quantize_price,
)


# ============================================================================
# FROZEN DATACLASSES - Explicit Results
# ============================================================================

@dataclass(frozen=True, slots=True)
class AccruedFees:
    """Fees owed by a vault, already rounded up to the asset's precision."""
    management_fee: Decimal
    performance_fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.management_fee + self.performance_fee


@dataclass(frozen=True, slots=True)
class BatchPricing:
    """
    Share prices fixed for one batch.

    total_assets and total_supply are the inputs the prices were computed
    from, kept so that the result can be audited on its own.
    """
    total_assets: Decimal
    total_supply: Decimal
    fees: AccruedFees
    gross_share_price: Decimal
    net_share_price: Decimal


NO_FEES = AccruedFees(management_fee=ZERO, performance_fee=ZERO)


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def elapsed_seconds(since: datetime, now: datetime) -> Decimal:
    """Whole seconds from since to now; zero if now is not after since."""
    if now <= since:
        return ZERO
    return Decimal(int((now - since).total_seconds()))


def calculate_management_fee(
    total_assets: Decimal,
    management_fee_bps: int,
    elapsed: Decimal,
    seconds_per_year: int,
) -> Decimal:
    """
    Continuously prorated management fee.

    PURE FUNCTION - unrounded; callers round to the asset's precision.

    Example:
        calculate_management_fee(Decimal("1000"), 100, Decimal(31_536_000), 31_536_000)
        # Decimal("10")
    """
    if total_assets <= 0 or management_fee_bps == 0 or elapsed <= 0:
        return ZERO
    return total_assets * management_fee_bps * elapsed / seconds_per_year / BPS_DENOMINATOR


def calculate_hurdle_return(
    watermark_value: Decimal,
    hurdle_rate_bps: int,
    elapsed: Decimal,
    seconds_per_year: int,
) -> Decimal:
    """Return the vault must clear, over the elapsed period, before performance fees apply."""
    if watermark_value <= 0 or hurdle_rate_bps == 0 or elapsed <= 0:
        return ZERO
    return watermark_value * hurdle_rate_bps * elapsed / seconds_per_year / BPS_DENOMINATOR


def calculate_performance_fee(
    remaining_assets: Decimal,
    watermark_value: Decimal,
    hurdle_return: Decimal,
    performance_fee_bps: int,
    hard_hurdle: bool,
) -> Decimal:
    """
    Performance fee on the return above the high-water mark.

    PURE FUNCTION - unrounded and never negative.

    Args:
        remaining_assets: Vault assets after the management fee
        watermark_value: total_supply * watermark price
        hurdle_return: Output of calculate_hurdle_return()
        performance_fee_bps: Fee rate on the applicable return
        hard_hurdle: True charges only the excess above the hurdle; False
            charges the whole return once the hurdle is cleared

    Returns:
        Zero whenever the realized return does not exceed the hurdle return.

    Example:
        # 8% return, 5% hard hurdle, 20% fee -> 20% of the 3% excess
        calculate_performance_fee(Decimal("1080"), Decimal("1000"), Decimal("50"), 2000, True)
        # Decimal("6")
    """
    profit = remaining_assets - watermark_value
    if profit <= 0 or profit <= hurdle_return or performance_fee_bps == 0:
        return ZERO
    applicable = profit - hurdle_return if hard_hurdle else profit
    return applicable * performance_fee_bps / BPS_DENOMINATOR


def compute_accrued_fees(
    total_assets: Decimal,
    total_supply: Decimal,
    state: FeeAccrualState,
    now: datetime,
    decimals: int,
    seconds_per_year: int,
) -> AccruedFees:
    """
    Management and performance fees accrued since the last checkpoints.

    Each fee is rounded up to the asset's precision and capped so that the
    two together never exceed total_assets. Nothing accrues while no shares
    are outstanding.
    """
    if total_supply <= 0 or total_assets <= 0:
        return NO_FEES
    unit = Decimal(10) ** -decimals

    management = calculate_management_fee(
        total_assets,
        state.management_fee_bps,
        elapsed_seconds(state.last_management_fee_at, now),
        seconds_per_year,
    )
    management = min(management.quantize(unit, rounding=ROUND_UP), total_assets)

    remaining = total_assets - management
    # Rounded up so that sub-unit price rounding never reads as profit
    watermark_value = (total_supply * state.watermark).quantize(unit, rounding=ROUND_UP)
    hurdle = calculate_hurdle_return(
        watermark_value,
        state.hurdle_rate_bps,
        elapsed_seconds(state.last_performance_fee_at, now),
        seconds_per_year,
    )
    performance = calculate_performance_fee(
        remaining, watermark_value, hurdle, state.performance_fee_bps, state.hard_hurdle,
    )
    performance = min(performance.quantize(unit, rounding=ROUND_UP), remaining)

    return AccruedFees(management_fee=management, performance_fee=performance)


def virtual_offset(decimals: int, config: ProtocolConfig) -> Decimal:
    """Virtual assets (= virtual shares) added to both sides of the price."""
    return config.virtual_offset * Decimal(10) ** -decimals


def gross_share_price(
    total_assets: Decimal,
    total_supply: Decimal,
    decimals: int,
    config: ProtocolConfig,
) -> Decimal:
    """(assets + va) / (supply + vs); exactly 1 for an empty vault."""
    offset = virtual_offset(decimals, config)
    return quantize_price((total_assets + offset) / (total_supply + offset))


def net_share_price(
    total_assets: Decimal,
    total_supply: Decimal,
    fees: AccruedFees,
    decimals: int,
    config: ProtocolConfig,
) -> Decimal:
    """
    Gross price minus the per-share value of the accrued fees.

    Saturates at zero when the fees exceed the assets (e.g. after a loss
    with fees still outstanding).
    """
    offset = virtual_offset(decimals, config)
    net_assets = total_assets + offset - fees.total
    if net_assets <= 0:
        return ZERO
    return quantize_price(net_assets / (total_supply + offset))


def price_batch(
    total_assets: Decimal,
    total_supply: Decimal,
    state: FeeAccrualState,
    now: datetime,
    decimals: int,
    config: ProtocolConfig,
) -> BatchPricing:
    """
    Fix gross and net prices for a batch from explicit inputs.

    Raises:
        ReconciliationError: If total_assets or total_supply is negative
    """
    if total_assets < 0 or total_supply < 0:
        raise ReconciliationError(
            f"Cannot price negative totals: assets={total_assets}, supply={total_supply}"
        )
    fees = compute_accrued_fees(
        total_assets, total_supply, state, now, decimals, config.seconds_per_year,
    )
    return BatchPricing(
        total_assets=total_assets,
        total_supply=total_supply,
        fees=fees,
        gross_share_price=gross_share_price(total_assets, total_supply, decimals, config),
        net_share_price=net_share_price(total_assets, total_supply, fees, decimals, config),
    )


def advance_fee_state(state: FeeAccrualState, pricing: BatchPricing, now: datetime) -> FeeAccrualState:
    """
    Checkpoint a vault's fee state after its batch settles.

    The management checkpoint always moves to now. The watermark is only
    ever raised, and only when the settled net price exceeds it; the
    performance checkpoint moves when a performance fee was charged or the
    watermark was raised.
    """
    raise_watermark = pricing.net_share_price > state.watermark
    charged = pricing.fees.performance_fee > 0
    return replace(
        state,
        last_management_fee_at=now,
        last_performance_fee_at=now if (raise_watermark or charged) else state.last_performance_fee_at,
        watermark=pricing.net_share_price if raise_watermark else state.watermark,
    )


def convert_to_shares(assets: Decimal, price: Decimal, decimals: int) -> Decimal:
    """
    Shares issued for assets at a fixed price, rounded down.

    Raises:
        ReconciliationError: If the price is zero
    """
    if assets <= 0:
        return ZERO
    if price <= 0:
        raise ReconciliationError("Cannot issue shares at a zero share price")
    return (assets / price).quantize(Decimal(10) ** -decimals, rounding=ROUND_DOWN)


def convert_to_assets(shares: Decimal, price: Decimal, decimals: int) -> Decimal:
    """Assets paid for shares at a fixed price, rounded down."""
    if shares <= 0 or price <= 0:
        return ZERO
    return (shares * price).quantize(Decimal(10) ** -decimals, rounding=ROUND_DOWN)


# ============================================================================
# ADAPTER FUNCTIONS (read from the store)
# ============================================================================

def unpriced_deposits(store, vault_id: str) -> Decimal:
    """Assets deposited into unsettled batches, for which no shares exist yet."""
    vault = store.get_vault(vault_id)
    return sum(
        (b.deposited for b in store.vault_batches(vault_id, vault.asset) if not b.is_settled),
        ZERO,
    )


def load_fee_inputs(store, vault_id: str) -> Tuple[Decimal, Decimal, FeeAccrualState, int]:
    """
    Extract (total_assets, total_supply, fee_state, decimals) for a staking vault.

    total_assets is the virtual balance minus deposits still waiting for
    their batch to settle.
    """
    vault = store.get_vault(vault_id)
    state = store.get_fee_state(vault_id)
    decimals = store.get_asset(vault.asset).decimals
    total_assets = store.get_balance(vault_id, vault.asset) - unpriced_deposits(store, vault_id)
    return max(total_assets, ZERO), store.get_share_supply(vault_id), state, decimals


def quote_share_price(store, vault_id: str) -> BatchPricing:
    """
    Live (unsettled) pricing of a staking vault at the store's current time.

    Informational only: claims always use the price fixed on their batch.
    """
    total_assets, supply, state, decimals = load_fee_inputs(store, vault_id)
    return price_batch(total_assets, supply, state, store.current_time, decimals, store.config)
