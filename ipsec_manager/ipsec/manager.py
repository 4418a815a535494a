# ipsec_manager/ipsec/manager.py
"""
Tunnel Management Contract

Capability set every backend provides. The reconciliation agent only
talks to this interface, never to a concrete backend.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List

from .models import TrafficStats, TunnelConfig, TunnelStatus


class TunnelManager(ABC):
    """
    Abstract IPsec tunnel backend

    Config-level operations (create/update/delete) are independent of
    connection-level ones (start/stop). update_tunnel may be implemented
    as delete-then-create, so callers must tolerate a short window in
    which the tunnel does not exist.

    Use as an async context manager to bracket the backend's lifetime:

        async with StrongSwanManager() as manager:
            ...
    """

    name = "abstract"

    async def __aenter__(self) -> "TunnelManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire backend resources (directories, daemons, sockets)"""

    @abstractmethod
    async def cleanup(self) -> None:
        """Release whatever initialize() acquired"""

    @abstractmethod
    async def create_tunnel(self, config: TunnelConfig) -> None:
        """Load a new tunnel configuration"""

    @abstractmethod
    async def update_tunnel(self, config: TunnelConfig) -> None:
        """Replace the configuration of an existing tunnel"""

    @abstractmethod
    async def delete_tunnel(self, name: str) -> None:
        """Stop the tunnel and remove its configuration"""

    @abstractmethod
    async def start_tunnel(self, name: str) -> None:
        """Initiate the connection"""

    @abstractmethod
    async def stop_tunnel(self, name: str) -> None:
        """Terminate the connection, keeping the configuration"""

    @abstractmethod
    async def get_tunnel_status(self, name: str) -> TunnelStatus:
        """Current status of one tunnel; raises TunnelNotFound if unknown"""

    @abstractmethod
    async def list_tunnels(self) -> List[TunnelStatus]:
        """Status of every configured tunnel"""

    @abstractmethod
    def validate_config(self, config: TunnelConfig) -> None:
        """
        Backend-specific feasibility check

        Runs in addition to policy validation. Raises ConfigRejected.
        """

    async def get_statistics(self, name: str) -> TrafficStats:
        status = await self.get_tunnel_status(name)
        return TrafficStats(
            bytes_in=status.bytes_in,
            bytes_out=status.bytes_out,
            packets_in=status.packets_in,
            packets_out=status.packets_out,
            timestamp=datetime.now(timezone.utc),
        )
