"""
adapters.py - External collaborator interfaces

Provides the two collaborators the accounting core talks to at its boundary:

Classes:
- CustodialAdapter: Protocol for custodians / strategy adapters holding real funds
- InMemoryCustodian: Custodian holding per-asset balances in memory
- TokenLedger: Protocol for wrapped-token and vault-share issuance
- InMemoryToken: Token ledger with balances and total supply in memory

The core never moves real funds except through a CustodialAdapter, and never
mints or burns except through a TokenLedger.
"""

from __future__ import annotations
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Protocol, runtime_checkable

from .core import ZERO, InsufficientBalance, ZeroAmount, to_decimal


@runtime_checkable
class CustodialAdapter(Protocol):
    """
    Protocol for custodians holding a vault's real funds.

    report_total_assets() is read-only and feeds settlement proposals.
    pull() and deposit() are only invoked by the router at settlement time
    (and by the issuance gateway when collateral arrives).
    """

    def report_total_assets(self, vault: str, asset: str) -> Decimal:
        ...

    def pull(self, asset: str, amount: Decimal) -> None:
        ...

    def deposit(self, asset: str, amount: Decimal) -> None:
        ...


class InMemoryCustodian:
    """
    Custodian holding balances in memory.

    One instance backs exactly one vault. Strategy results are simulated with
    record_yield(), which changes real holdings without any bookkeeping.
    """

    def __init__(self, name: str = "custodian"):
        self.name = name
        self.holdings: Dict[str, Decimal] = defaultdict(lambda: ZERO)

    def report_total_assets(self, vault: str, asset: str) -> Decimal:
        """Vault is ignored: this custodian backs a single vault."""
        return self.holdings[asset]

    def pull(self, asset: str, amount: Decimal) -> None:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ZeroAmount(f"{self.name}: pull amount must be positive, got {amount}")
        if self.holdings[asset] < amount:
            raise InsufficientBalance(
                f"{self.name}: cannot pull {amount} {asset}, holding {self.holdings[asset]}"
            )
        self.holdings[asset] -= amount

    def deposit(self, asset: str, amount: Decimal) -> None:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ZeroAmount(f"{self.name}: deposit amount must be positive, got {amount}")
        self.holdings[asset] += amount

    def record_yield(self, asset: str, amount: Decimal) -> None:
        """Apply a strategy gain (positive) or loss (negative) to real holdings."""
        amount = to_decimal(amount)
        if self.holdings[asset] + amount < 0:
            raise InsufficientBalance(f"{self.name}: loss exceeds holdings of {asset}")
        self.holdings[asset] += amount

    def __repr__(self):
        held = ", ".join(f"{a}={q}" for a, q in sorted(self.holdings.items()) if q)
        return f"InMemoryCustodian({self.name}: {held})"


@runtime_checkable
class TokenLedger(Protocol):
    """Protocol for wrapped tokens (kTokens) and staking-vault shares."""

    symbol: str

    def mint(self, account: str, amount: Decimal) -> None:
        ...

    def burn(self, account: str, amount: Decimal) -> None:
        ...

    def transfer(self, source: str, dest: str, amount: Decimal) -> None:
        ...

    def balance_of(self, account: str) -> Decimal:
        ...

    def total_supply(self) -> Decimal:
        ...


class InMemoryToken:
    """Token ledger keeping balances in a dict; supply is the sum of balances."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        self.balances: Dict[str, Decimal] = defaultdict(lambda: ZERO)

    def _check(self, amount: Decimal) -> Decimal:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ZeroAmount(f"{self.symbol}: amount must be positive, got {amount}")
        return amount

    def mint(self, account: str, amount: Decimal) -> None:
        self.balances[account] += self._check(amount)

    def burn(self, account: str, amount: Decimal) -> None:
        amount = self._check(amount)
        if self.balances[account] < amount:
            raise InsufficientBalance(
                f"{self.symbol}: {account} holds {self.balances[account]}, cannot burn {amount}"
            )
        self.balances[account] -= amount

    def transfer(self, source: str, dest: str, amount: Decimal) -> None:
        amount = self._check(amount)
        if self.balances[source] < amount:
            raise InsufficientBalance(
                f"{self.symbol}: {source} holds {self.balances[source]}, cannot send {amount}"
            )
        self.balances[source] -= amount
        self.balances[dest] += amount

    def balance_of(self, account: str) -> Decimal:
        return self.balances[account]

    def total_supply(self) -> Decimal:
        return sum((q for _, q in sorted(self.balances.items())), ZERO)

    def __repr__(self):
        return f"InMemoryToken({self.symbol}, supply={self.total_supply()})"
