"""
Unit Test Fixtures for Group-Buy Service

Uses GroupBuyTestDataFactory from the data contract.
"""

import pytest

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.groupbuy.data_contract import GroupBuyTestDataFactory, STANDARD_TIERS


@pytest.fixture
def factory():
    return GroupBuyTestDataFactory


@pytest.fixture
def campaign_id(factory):
    return factory.make_campaign_id()


@pytest.fixture
def standard_brackets(factory, campaign_id):
    """[0-49] @ 100.00, [50-99] @ 90.00, [100+] @ 80.00"""
    return factory.make_brackets(campaign_id, STANDARD_TIERS)
