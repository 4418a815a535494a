"""
IPsec tunnel model and backends

Tunnel configuration and status types, the lifecycle state machine, the
TunnelManager contract and its implementations (in-memory, strongSwan).
"""

from .models import (
    AuthMethod,
    AuthType,
    CryptoSuite,
    DHGroup,
    DPDAction,
    DPDConfig,
    EncryptionAlgorithm,
    IKEVersion,
    IntegrityAlgorithm,
    IPsecMode,
    TrafficSelector,
    TrafficStats,
    TunnelConfig,
    TunnelStatus,
)
from .states import TRANSITIONS, TunnelLifecycle, TunnelState
from .manager import TunnelManager
from .memory import MemoryTunnelManager
from .strongswan import StrongSwanManager
from .factory import new_manager

__all__ = [
    "AuthMethod",
    "AuthType",
    "CryptoSuite",
    "DHGroup",
    "DPDAction",
    "DPDConfig",
    "EncryptionAlgorithm",
    "IKEVersion",
    "IntegrityAlgorithm",
    "IPsecMode",
    "TrafficSelector",
    "TrafficStats",
    "TunnelConfig",
    "TunnelStatus",
    "TRANSITIONS",
    "TunnelLifecycle",
    "TunnelState",
    "TunnelManager",
    "MemoryTunnelManager",
    "StrongSwanManager",
    "new_manager",
]
