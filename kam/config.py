"""
config.py - Protocol configuration

ProtocolConfig is passed by reference into every component at construction.
Nothing reads configuration from module globals, so tests can run several
independently configured systems side by side.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from typing import Any, Mapping

from .core import SECONDS_PER_YEAR, TREASURY_VAULT, to_decimal


@dataclass(frozen=True, slots=True)
class ProtocolConfig:
    """
    Immutable protocol-wide settings.

    Attributes:
        context_id: Chain / deployment context mixed into every derived id.
        min_cooldown_seconds: Lower bound on a settlement proposal's timelock.
        max_cooldown_seconds: Upper bound on a settlement proposal's timelock.
        default_cooldown_seconds: Timelock used when a proposal does not name one.
        seconds_per_year: Year length for fee and hurdle proration.
        virtual_offset: Virtual shares / virtual assets added to both sides of
            the share price, in base units of the vault asset.
        treasury_vault: Vault id receiving crystallized fees.
    """
    context_id: str = "kam"
    min_cooldown_seconds: int = 0
    max_cooldown_seconds: int = 86_400
    default_cooldown_seconds: int = 3_600
    seconds_per_year: int = SECONDS_PER_YEAR
    virtual_offset: Decimal = Decimal("1")
    treasury_vault: str = TREASURY_VAULT

    def __post_init__(self):
        if not self.context_id:
            raise ValueError("context_id cannot be empty")
        if not self.treasury_vault:
            raise ValueError("treasury_vault cannot be empty")
        if self.min_cooldown_seconds < 0:
            raise ValueError("min_cooldown_seconds cannot be negative")
        if self.max_cooldown_seconds < self.min_cooldown_seconds:
            raise ValueError(
                f"max_cooldown_seconds ({self.max_cooldown_seconds}) < "
                f"min_cooldown_seconds ({self.min_cooldown_seconds})"
            )
        if not self.min_cooldown_seconds <= self.default_cooldown_seconds <= self.max_cooldown_seconds:
            raise ValueError("default_cooldown_seconds must lie within the cooldown bounds")
        if self.seconds_per_year <= 0:
            raise ValueError("seconds_per_year must be positive")
        offset = to_decimal(self.virtual_offset)
        if offset <= 0:
            raise ValueError("virtual_offset must be positive")
        object.__setattr__(self, 'virtual_offset', offset)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> ProtocolConfig:
        """
        Build a config from a plain mapping (e.g. parsed JSON or TOML).

        Raises:
            ValueError: On unknown keys.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**dict(values))

    def with_cooldown_bounds(
        self,
        min_seconds: int,
        max_seconds: int,
        default_seconds: int,
    ) -> ProtocolConfig:
        """Return a copy with new cooldown bounds (validated by __post_init__)."""
        return replace(
            self,
            min_cooldown_seconds=min_seconds,
            max_cooldown_seconds=max_seconds,
            default_cooldown_seconds=default_seconds,
        )

    def cooldown_in_bounds(self, seconds: int) -> bool:
        return self.min_cooldown_seconds <= seconds <= self.max_cooldown_seconds
