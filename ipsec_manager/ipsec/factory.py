# ipsec_manager/ipsec/factory.py
"""Backend selection"""

import platform

from ..errors import UnsupportedPlatform
from .manager import TunnelManager
from .memory import MemoryTunnelManager
from .strongswan import StrongSwanManager

BACKENDS = ("auto", "strongswan", "memory")


def get_platform() -> str:
    return platform.system().lower()


def is_platform_supported() -> bool:
    return get_platform() == "linux"


def new_manager(backend: str = "auto", swanctl_dir: str = "/etc/swanctl") -> TunnelManager:
    """
    Create a tunnel backend

    Args:
        backend: auto, strongswan or memory
        swanctl_dir: swanctl configuration directory (strongswan only)
    """
    if backend == "memory":
        return MemoryTunnelManager()

    if backend == "strongswan":
        return StrongSwanManager(conf_dir=swanctl_dir)

    if backend == "auto":
        if is_platform_supported():
            return StrongSwanManager(conf_dir=swanctl_dir)
        raise UnsupportedPlatform(f"no tunnel backend for platform {get_platform()!r}")

    raise ValueError(f"unknown backend {backend!r}, expected one of {', '.join(BACKENDS)}")
