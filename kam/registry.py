"""
registry.py - Capability checks

Every mutating operation asks a CapabilityRegistry whether the caller may
act. Components receive the registry at construction and never inspect roles
any other way, so a test can swap in any object with the same five methods.
"""

from __future__ import annotations
import logging
from typing import Dict, Iterable, Mapping, Optional, Protocol, Set, runtime_checkable

from .core import AuthorizationError

logger = logging.getLogger(__name__)


ROLE_ADMIN = "ADMIN"
ROLE_RELAYER = "RELAYER"
ROLE_GUARDIAN = "GUARDIAN"
ROLE_OPERATOR = "OPERATOR"
ROLE_INSTITUTION = "INSTITUTION"

ALL_ROLES = (ROLE_ADMIN, ROLE_RELAYER, ROLE_GUARDIAN, ROLE_OPERATOR, ROLE_INSTITUTION)


@runtime_checkable
class CapabilityRegistry(Protocol):
    """Opaque authorization oracle consulted by every mutating operation."""

    def is_admin(self, account: str) -> bool:
        ...

    def is_relayer(self, account: str) -> bool:
        ...

    def is_guardian(self, account: str) -> bool:
        ...

    def is_operator(self, account: str) -> bool:
        ...

    def is_institution(self, account: str) -> bool:
        ...


_CHECKS = {
    ROLE_ADMIN: "is_admin",
    ROLE_RELAYER: "is_relayer",
    ROLE_GUARDIAN: "is_guardian",
    ROLE_OPERATOR: "is_operator",
    ROLE_INSTITUTION: "is_institution",
}


def require_capability(registry: CapabilityRegistry, caller: str, *roles: str) -> None:
    """
    Raise AuthorizationError unless caller holds at least one of roles.

    Example:
        require_capability(registry, caller, ROLE_RELAYER, ROLE_OPERATOR)
    """
    if not roles:
        raise ValueError("At least one role is required")
    for role in roles:
        check = _CHECKS.get(role)
        if check is None:
            raise ValueError(f"Unknown role: {role}")
        if getattr(registry, check)(caller):
            return
    logger.warning("Authorization denied: %s lacks %s", caller, "/".join(roles))
    raise AuthorizationError(f"{caller} lacks required capability: {' or '.join(roles)}")


class RoleRegistry:
    """
    In-memory role table implementing CapabilityRegistry.

    The admin account holds ROLE_ADMIN from construction and is the only
    account allowed to grant or revoke roles.

    Example:
        registry = RoleRegistry(admin="admin")
        registry.grant("admin", ROLE_RELAYER, "relayer-1")
        registry.is_relayer("relayer-1")   # True
    """

    def __init__(self, admin: str, roles: Optional[Mapping[str, Iterable[str]]] = None):
        if not admin:
            raise ValueError("admin cannot be empty")
        self._members: Dict[str, Set[str]] = {role: set() for role in ALL_ROLES}
        self._members[ROLE_ADMIN].add(admin)
        for role, accounts in (roles or {}).items():
            if role not in self._members:
                raise ValueError(f"Unknown role: {role}")
            self._members[role].update(accounts)

    def has_role(self, role: str, account: str) -> bool:
        return account in self._members.get(role, ())

    def members(self, role: str) -> Set[str]:
        return set(self._members[role])

    def grant(self, caller: str, role: str, account: str) -> None:
        require_capability(self, caller, ROLE_ADMIN)
        if role not in self._members:
            raise ValueError(f"Unknown role: {role}")
        self._members[role].add(account)
        logger.info("Granted %s to %s", role, account)

    def revoke(self, caller: str, role: str, account: str) -> None:
        require_capability(self, caller, ROLE_ADMIN)
        if role not in self._members:
            raise ValueError(f"Unknown role: {role}")
        if role == ROLE_ADMIN and self._members[ROLE_ADMIN] == {account}:
            raise AuthorizationError("Cannot revoke the last admin")
        self._members[role].discard(account)
        logger.info("Revoked %s from %s", role, account)

    def is_admin(self, account: str) -> bool:
        return self.has_role(ROLE_ADMIN, account)

    def is_relayer(self, account: str) -> bool:
        return self.has_role(ROLE_RELAYER, account)

    def is_guardian(self, account: str) -> bool:
        return self.has_role(ROLE_GUARDIAN, account)

    def is_operator(self, account: str) -> bool:
        return self.has_role(ROLE_OPERATOR, account)

    def is_institution(self, account: str) -> bool:
        return self.has_role(ROLE_INSTITUTION, account)

    def __repr__(self) -> str:
        counts = ", ".join(f"{r}={len(m)}" for r, m in self._members.items() if m)
        return f"RoleRegistry({counts})"
