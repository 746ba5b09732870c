"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for cloudflare_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from cloudflare_mock import MockCloudflare, MockCloudflareState, MockMailSender  # noqa: E402

TUNNEL_ID = "c1744f8b-faa1-48a4-9e5c-02ac921467fa"
OTHER_TUNNEL_ID = "5d0e0c5e-2f4b-4b8e-9a43-6f1f2b3c4d5e"
LOCATION_ID = "0b2c4e6f1a3b4c5d8e9fa0b1c2d3e4f5"
ZONE_ID = "023e105f4ecef8ad9ca31a8372d0c353"


@pytest.fixture
def cf_state() -> MockCloudflareState:
    """Empty account state."""
    return MockCloudflareState()


@pytest.fixture
def cf(cf_state: MockCloudflareState) -> MockCloudflare:
    """Provider double over cf_state."""
    return MockCloudflare(cf_state)


@pytest.fixture
def mail() -> MockMailSender:
    return MockMailSender()
