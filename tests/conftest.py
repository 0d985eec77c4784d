"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - component/: Component tests (services against in-memory mocks)
    - unit/     : Unit tests (pure functions, no I/O)
    - integration/: Repository and services against a live PostgreSQL (skipped when unreachable)
    - contracts/: Test data factories shared by every layer
"""
import logging
import os
import sys

import pytest

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

# Test environment settings (deployment/environments/test.env)
os.environ.setdefault("ENV", "test")


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "component: Component tests")
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")


@pytest.fixture(autouse=True)
def test_logger(request):
    """Log test start and end"""
    logger = logging.getLogger("test")
    logger.info(f"Starting test: {request.node.name}")
    yield logger
    logger.info(f"Finished test: {request.node.name}")
