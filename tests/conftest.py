"""pytest configuration for LabScan agent tests."""

import pytest

from labscan_agent.config import AgentConfig


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture
def fast_config(tmp_path):
    """Config with tiny delays and loopback-only probe targets."""
    return AgentConfig(
        state_path=str(tmp_path / "agent_config.json"),
        backoff_s=[0.01, 0.01, 0.01],
        handshake_timeout_s=0.5,
        heartbeat_min_s=30.0,
        heartbeat_max_s=30.0,
        probe_interval_s=30.0,
        internet_targets=["127.0.0.1:9"],
        internet_timeout_s=0.2,
        dns_hostname="localhost",
        dns_timeout_s=0.5,
        gateway_targets=["127.0.0.1:9"],
        gateway_timeout_s=0.2,
        provision_retry_s=0.0,
    )
