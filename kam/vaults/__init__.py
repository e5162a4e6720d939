"""
vaults - Collaborators that sit in front of the router

- IssuanceGateway: institutional deposit / redemption of 1:1 kTokens
- StakingVault: retail staking of kTokens into share-issuing yield vaults
"""

from .gateway import IssuanceGateway
from .staking import StakingVault

__all__ = ['IssuanceGateway', 'StakingVault']
