# ipsec_manager/ipsec/memory.py
"""
In-memory tunnel backend

Keeps tunnel configs and lifecycle state in process. Every call and
every state transition is recorded, and individual operations can be
made to fail, which makes it the backend of choice for tests and for
dry runs of the agent (--backend memory).
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from ..errors import BackendError, ConfigRejected, TunnelNotFound
from .manager import TunnelManager
from .models import TunnelConfig, TunnelStatus
from .states import TunnelLifecycle, TunnelState

logger = logging.getLogger('ipsec-agent.backend.memory')


class MemoryTunnelManager(TunnelManager):
    """
    Tunnel backend that lives entirely in memory

    Attributes:
        calls: (operation, tunnel name) for every contract call
        transitions: (tunnel name, from, to) for every state change
        failures: (operation, tunnel name) pairs that raise BackendError
    """

    name = "memory"

    def __init__(self, connect_succeeds: bool = True):
        self.connect_succeeds = connect_succeeds
        self.initialized = False

        self.calls: List[Tuple[str, str]] = []
        self.transitions: List[Tuple[str, TunnelState, TunnelState]] = []
        self.failures: Set[Tuple[str, str]] = set()

        self._configs: Dict[str, TunnelConfig] = {}
        self._lifecycles: Dict[str, TunnelLifecycle] = {}
        self._status: Dict[str, TunnelStatus] = {}

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def fail(self, operation: str, name: str) -> None:
        """Make the next and all following `operation` calls on `name` fail"""
        self.failures.add((operation, name))

    def clear_failures(self) -> None:
        self.failures.clear()

    def calls_for(self, operation: str) -> List[str]:
        return [name for op, name in self.calls if op == operation]

    def config(self, name: str) -> Optional[TunnelConfig]:
        return self._configs.get(name)

    def mark_error(self, name: str, message: str) -> None:
        """Simulate a backend-reported failure"""
        lifecycle = self._lifecycle(name)
        if lifecycle.state != TunnelState.ERROR:
            lifecycle.transition(TunnelState.ERROR)
        self._status[name].error_message = message

    def rekey(self, name: str) -> None:
        """Simulate a transparent rekey of an established tunnel"""
        lifecycle = self._lifecycle(name)
        lifecycle.transition(TunnelState.REKEYING)
        lifecycle.transition(TunnelState.ESTABLISHED)
        self._status[name].last_rekey_at = datetime.now(timezone.utc)

    def add_traffic(self, name: str, bytes_in: int = 0, bytes_out: int = 0, packets_in: int = 0, packets_out: int = 0):
        status = self._status[name]
        status.bytes_in += bytes_in
        status.bytes_out += bytes_out
        status.packets_in += packets_in
        status.packets_out += packets_out

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        self.initialized = True
        logger.info("Memory tunnel backend initialized")

    async def cleanup(self) -> None:
        self.initialized = False
        logger.info("Memory tunnel backend cleaned up")

    def validate_config(self, config: TunnelConfig) -> None:
        if not config.name:
            raise ConfigRejected("tunnel name is required", operation="validate")
        if ("validate", config.name) in self.failures:
            raise ConfigRejected(f"configuration rejected for {config.name}", tunnel=config.name, operation="validate")

    async def create_tunnel(self, config: TunnelConfig) -> None:
        self._record("create", config.name)
        if config.name in self._configs:
            raise BackendError(f"tunnel already exists: {config.name}", tunnel=config.name, operation="create")
        self.validate_config(config)

        self._configs[config.name] = config
        self._lifecycles[config.name] = TunnelLifecycle(config.name, on_transition=self._on_transition)
        self._status[config.name] = TunnelStatus(
            name=config.name,
            local_address=config.local_address,
            remote_address=config.remote_address,
        )
        logger.info(f"Created tunnel {config.name}")

        if config.autostart:
            await self._connect(config.name)

    async def update_tunnel(self, config: TunnelConfig) -> None:
        self._record("update", config.name)
        if config.name not in self._configs:
            raise TunnelNotFound(config.name, operation="update")
        self.validate_config(config)

        # Delete-then-create: the tunnel is briefly absent
        self._teardown(config.name)
        self._configs.pop(config.name)
        self._configs[config.name] = config
        self._lifecycles[config.name] = TunnelLifecycle(config.name, on_transition=self._on_transition)
        self._status[config.name] = TunnelStatus(
            name=config.name,
            local_address=config.local_address,
            remote_address=config.remote_address,
        )
        logger.info(f"Updated tunnel {config.name}")

        if config.autostart:
            await self._connect(config.name)

    async def delete_tunnel(self, name: str) -> None:
        self._record("delete", name)
        if name not in self._configs:
            raise TunnelNotFound(name, operation="delete")

        self._teardown(name)
        del self._configs[name]
        del self._lifecycles[name]
        del self._status[name]
        logger.info(f"Deleted tunnel {name}")

    async def start_tunnel(self, name: str) -> None:
        self._record("start", name)
        if name not in self._configs:
            raise TunnelNotFound(name, operation="start")
        await self._connect(name)

    async def stop_tunnel(self, name: str) -> None:
        self._record("stop", name)
        if name not in self._configs:
            raise TunnelNotFound(name, operation="stop")
        self._teardown(name)

    async def get_tunnel_status(self, name: str) -> TunnelStatus:
        self._record("status", name)
        if name not in self._configs:
            raise TunnelNotFound(name, operation="status")
        return self._snapshot(name)

    async def list_tunnels(self) -> List[TunnelStatus]:
        self._record("list", "*")
        return [self._snapshot(name) for name in sorted(self._configs)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, operation: str, name: str) -> None:
        self.calls.append((operation, name))
        if (operation, name) in self.failures:
            raise BackendError(f"{operation} failed for {name}", tunnel=name, operation=operation)

    def _lifecycle(self, name: str) -> TunnelLifecycle:
        if name not in self._lifecycles:
            raise TunnelNotFound(name)
        return self._lifecycles[name]

    def _on_transition(self, name: str, source: TunnelState, target: TunnelState) -> None:
        self.transitions.append((name, source, target))

    async def _connect(self, name: str) -> None:
        lifecycle = self._lifecycle(name)
        if lifecycle.state not in (TunnelState.DOWN, TunnelState.ERROR):
            logger.debug(f"Tunnel {name} already {lifecycle.state.value}")
            return

        status = self._status[name]
        lifecycle.transition(TunnelState.CONNECTING)

        if not self.connect_succeeds:
            lifecycle.transition(TunnelState.ERROR)
            status.error_message = "peer did not respond"
            return

        lifecycle.transition(TunnelState.ESTABLISHED)
        status.established_at = datetime.now(timezone.utc)
        status.error_message = None

    def _teardown(self, name: str) -> None:
        lifecycle = self._lifecycle(name)
        if lifecycle.state == TunnelState.REKEYING:
            lifecycle.transition(TunnelState.ESTABLISHED)
        if lifecycle.state != TunnelState.DOWN:
            lifecycle.transition(TunnelState.DOWN)
        self._status[name].established_at = None

    def _snapshot(self, name: str) -> TunnelStatus:
        status = self._status[name].model_copy()
        status.state = self._lifecycles[name].state
        return status
