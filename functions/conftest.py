"""Pytest configuration for Cloud Function tests."""

import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest


# Add the functions directory to the Python path
sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def mock_google_clients():
    """Keep tests from creating real Cloud Resource Manager clients."""
    with patch("policy_gateway.resourcemanager_v3.OrganizationsClient") as client:
        yield client


@pytest.fixture
def clean_environment():
    """Provide a clean environment for testing."""
    original_env = os.environ.copy()
    config_vars = [
        "GOOGLE_APPLICATION_CREDENTIALS",
        "CONFIG_PATH",
        "ALLOW_DOMAINS",
        "RESOURCES",
        "DRY_RUN",
        "MAX_ATTEMPTS",
        "TIMEOUT_SECONDS",
        "DEBUG",
    ]

    for var in config_vars:
        os.environ.pop(var, None)

    yield

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
