"""
Shared pytest configuration and fixtures for the pool trade monitor tests.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from shared.types import Network, PoolHandle, TokenInfo
from tests.fakes import ETH_NETWORK, SAMPLE_POOL, SAMPLE_TOKEN, FakeConnection

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_timing_config.return_value = {...}
    """
    loader = MagicMock()
    loader.get_timing_config.return_value = {
        "connection": {
            "keepalive_interval_seconds": 25,
            "keepalive_timeout_seconds": 10,
            "reconnect_delay_seconds": 5,
            "request_timeout_seconds": 15,
        },
        "status_report": {"interval_seconds": 300},
        "telegram": {
            "poll_timeout_seconds": 30,
            "request_timeout_seconds": 45,
            "error_retry_delay_seconds": 5,
            "per_chat_interval_seconds": 0,
        },
    }
    loader.get_app_config.return_value = {
        "logging": {"log_dir": "logs"},
        "trade_filter": {"min_base_amount": "0.01"},
        "cache": {"block_timestamp_cache_size": 500},
    }
    loader.get_networks_config.return_value = {}
    return loader


@pytest.fixture
def eth_network() -> Network:
    return ETH_NETWORK


@pytest.fixture
def sample_token() -> TokenInfo:
    return SAMPLE_TOKEN


@pytest.fixture
def sample_pool() -> PoolHandle:
    return SAMPLE_POOL


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()
