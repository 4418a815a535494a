# tests/conftest.py
"""
Pytest fixtures shared by all test packages
Factories for tunnels, policies and node identities
"""

import pytest

from ipsec_manager.ipsec.memory import MemoryTunnelManager
from ipsec_manager.ipsec.models import (
    AuthMethod,
    CryptoSuite,
    DPDConfig,
    TrafficSelector,
    TunnelConfig,
)
from ipsec_manager.policy.schema import NodeIdentity, Policy


def build_tunnel(name="site-a", **overrides) -> TunnelConfig:
    """Valid PSK ESP tunnel; keyword arguments replace top-level fields"""
    fields = dict(
        name=name,
        mode="esp-tunnel",
        local_address="192.0.2.1",
        remote_address="198.51.100.1",
        crypto=CryptoSuite(),
        auth=AuthMethod(type="psk", secret="s3cret-psk-value"),
        traffic_selectors=[TrafficSelector(local_subnet="10.1.0.0/24", remote_subnet="10.2.0.0/24")],
        dpd=DPDConfig(),
        autostart=True,
    )
    fields.update(overrides)
    return TunnelConfig(**fields)


def build_policy(name="policy", tunnels=None, **overrides) -> Policy:
    fields = dict(
        id=f"id-{name}",
        name=name,
        priority=0,
        enabled=True,
        tunnels=tunnels if tunnels is not None else [build_tunnel()],
        targets=[],
    )
    fields.update(overrides)
    return Policy(**fields)


@pytest.fixture
def make_tunnel():
    return build_tunnel


@pytest.fixture
def make_policy():
    return build_policy


@pytest.fixture
def node():
    """Node tagged 'edge' and 'eu'"""
    return NodeIdentity(
        id="node-1",
        hostname="gw-1",
        platform="linux",
        ip_address="192.0.2.1",
        version="0.1.0",
        tags=["edge", "eu"],
    )


@pytest.fixture
def memory_manager():
    return MemoryTunnelManager()
