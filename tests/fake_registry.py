"""
fake_registry.py - Test helper for CapabilityRegistry

Provides a minimal CapabilityRegistry for testing components without a
RoleRegistry, plus a counter of how often each capability was consulted.
"""

from __future__ import annotations
from collections import Counter
from typing import Iterable, Optional


class FakeRegistry:
    """
    Registry answering from fixed account sets.

    Example:
        registry = FakeRegistry(relayers={"relayer"}, guardians={"guardian"})
        registry.is_relayer("relayer")   # True
        registry.checks["is_relayer"]    # 1
    """

    def __init__(
        self,
        admins: Optional[Iterable[str]] = None,
        relayers: Optional[Iterable[str]] = None,
        guardians: Optional[Iterable[str]] = None,
        operators: Optional[Iterable[str]] = None,
        institutions: Optional[Iterable[str]] = None,
    ):
        self._admins = set(admins or ())
        self._relayers = set(relayers or ())
        self._guardians = set(guardians or ())
        self._operators = set(operators or ())
        self._institutions = set(institutions or ())
        self.checks = Counter()

    def is_admin(self, account: str) -> bool:
        self.checks["is_admin"] += 1
        return account in self._admins

    def is_relayer(self, account: str) -> bool:
        self.checks["is_relayer"] += 1
        return account in self._relayers

    def is_guardian(self, account: str) -> bool:
        self.checks["is_guardian"] += 1
        return account in self._guardians

    def is_operator(self, account: str) -> bool:
        self.checks["is_operator"] += 1
        return account in self._operators

    def is_institution(self, account: str) -> bool:
        self.checks["is_institution"] += 1
        return account in self._institutions


class AllowAll(FakeRegistry):
    """Every account holds every capability."""

    def __init__(self):
        super().__init__()

    def is_admin(self, account: str) -> bool:
        self.checks["is_admin"] += 1
        return True

    def is_relayer(self, account: str) -> bool:
        self.checks["is_relayer"] += 1
        return True

    def is_guardian(self, account: str) -> bool:
        self.checks["is_guardian"] += 1
        return True

    def is_operator(self, account: str) -> bool:
        self.checks["is_operator"] += 1
        return True

    def is_institution(self, account: str) -> bool:
        self.checks["is_institution"] += 1
        return True
