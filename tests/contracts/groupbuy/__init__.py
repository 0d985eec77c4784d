"""
Group-Buy Service Contracts

This module provides the contracts for groupbuy_service testing.
"""

from .data_contract import STANDARD_TIERS, GroupBuyTestDataFactory

__all__ = ["STANDARD_TIERS", "GroupBuyTestDataFactory"]
