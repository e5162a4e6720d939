"""
conftest.py - Shared pytest fixtures for the settlement core tests

Provides common fixtures used across unit, conformance and functional tests:
- Role registry with one account per capability
- Wired systems (gateway only, gateway + staking vault)
- Funded accounts holding kTokens
"""

import pytest
from decimal import Decimal

from tests.builders import make_registry, make_system


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def system():
    return make_system()


@pytest.fixture
def gateway(system):
    return system.gateways["gateway"]


@pytest.fixture
def kusd(gateway):
    return gateway.token_for("USDC")


@pytest.fixture
def staking_system():
    return make_system(with_vault=True)


@pytest.fixture
def alpha(staking_system):
    return staking_system.staking_vaults["alpha"]


@pytest.fixture
def funded_staking(staking_system):
    """alice and bob each hold 1,000 kUSD; the gateway batch is still open."""
    gateway = staking_system.gateways["gateway"]
    gateway.deposit("inst", "USDC", Decimal("1000"), "alice")
    gateway.deposit("inst", "USDC", Decimal("1000"), "bob")
    return staking_system
