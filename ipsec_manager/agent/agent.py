#!/usr/bin/env python3
# ipsec_manager/agent/agent.py
"""
IPsec Reconciliation Agent
Runs on each node and keeps its tunnels converged to the policies the
control plane assigns to it
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError
from pydantic_settings import SettingsError

from ..errors import IPsecManagerError, PolicyValidationError, TransientNetworkError
from ..ipsec.factory import BACKENDS, new_manager
from ..ipsec.manager import TunnelManager
from ..ipsec.models import TunnelConfig
from ..ipsec.states import TunnelState
from ..policy.engine import PolicyEngine
from ..policy.schema import NodeIdentity, NodeStatus, Policy
from .client import PolicySourceClient
from .config import AgentSettings
from .identity import load_or_create_identity

logger = logging.getLogger('ipsec-agent')


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass"""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.failed


class ReconciliationAgent:
    """
    Reconciliation Agent - desired-state controller for one node

    Responsibilities:
    1. Register the node with the policy source
    2. Fetch applicable policies and converge the backend to them
    3. Observe tunnel health
    4. Restart autostart tunnels that fell down (watchdog)

    Sync, health and watchdog run as independent asyncio tasks sharing
    one shutdown event. The last-applied tunnel mapping is guarded by a
    lock and copied out before iterating, so no lock is held across a
    backend call.
    """

    def __init__(
        self,
        identity: NodeIdentity,
        client: PolicySourceClient,
        manager: TunnelManager,
        engine: Optional[PolicyEngine] = None,
        sync_interval: float = 60,
        health_interval: float = 10,
        watchdog_interval: float = 30,
        shutdown_grace: float = 10,
    ):
        self.identity = identity
        self.client = client
        self.manager = manager
        self.engine = engine or PolicyEngine()
        self.sync_interval = sync_interval
        self.health_interval = health_interval
        self.watchdog_interval = watchdog_interval
        self.shutdown_grace = shutdown_grace

        # State tracking
        self.registered = False
        self.last_sync_at: Optional[datetime] = None
        self.current_policies: List[Policy] = []

        self._applied: Dict[str, TunnelConfig] = {}
        self._lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._shutdown.is_set()

    async def applied_tunnels(self) -> Dict[str, TunnelConfig]:
        """Copy of the last-applied tunnel mapping"""
        async with self._lock:
            return dict(self._applied)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Register, apply policies once, then launch the background loops"""
        if self._tasks:
            logger.warning("Agent already started")
            return

        logger.info(
            f"Starting agent {self.identity.id} "
            f"(sync every {self.sync_interval}s, health every {self.health_interval}s, "
            f"watchdog every {self.watchdog_interval}s)"
        )
        self._shutdown.clear()

        await self.register()

        if not await self.sync_policies():
            logger.warning("Initial policy sync failed (will retry)")

        self._tasks = [
            asyncio.create_task(self._run_loop("policy-sync", self.sync_interval, self._sync_tick)),
            asyncio.create_task(self._run_loop("health-check", self.health_interval, self.check_health)),
            asyncio.create_task(self._run_loop("watchdog", self.watchdog_interval, self.watchdog_check)),
        ]
        logger.info("Agent started")

    async def stop(self) -> None:
        """Signal every loop and wait for them, at most shutdown_grace seconds"""
        logger.info("Stopping agent")
        self._shutdown.set()

        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_grace)
        for task in pending:
            logger.warning(f"Loop {task.get_name()} did not exit within {self.shutdown_grace}s, abandoning it")
            task.cancel()

        self._tasks = []
        if pending:
            logger.warning("Agent shutdown timed out")
        else:
            logger.info("Agent stopped cleanly")

    async def _run_loop(self, name: str, interval: float, work: Callable[[], Awaitable]) -> None:
        task = asyncio.current_task()
        if task is not None:
            task.set_name(name)

        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await work()
            except Exception as e:
                logger.error(f"{name} tick failed: {e}")

        logger.debug(f"{name} loop exited")

    # ------------------------------------------------------------------
    # Policy sync
    # ------------------------------------------------------------------

    async def register(self) -> bool:
        """Register this node with the policy source"""
        logger.info(f"Registering node {self.identity.id} ({self.identity.hostname}, tags={self.identity.tags})")
        try:
            await asyncio.to_thread(self.client.register, self.identity)
        except TransientNetworkError as e:
            logger.warning(f"Registration failed (will retry): {e}")
            return False

        self.registered = True
        logger.info("Registered with policy source")
        return True

    async def report_status(self, status: str) -> bool:
        """Tell the policy source this node is online, offline or in error"""
        try:
            await asyncio.to_thread(self.client.update_status, self.identity.id, status)
        except TransientNetworkError as e:
            logger.warning(f"Failed to report status {status}: {e}")
            return False
        return True

    async def _sync_tick(self) -> None:
        if not self.registered:
            await self.register()
        await self.sync_policies()

    async def sync_policies(self) -> bool:
        """
        Fetch policies and reconcile

        A failed fetch leaves the running tunnels and the last-applied set
        untouched: the node keeps operating on its last-known-good policy.
        """
        logger.debug("Syncing policies")
        try:
            policies = await asyncio.to_thread(self.client.get_policies, self.identity.id)
        except TransientNetworkError as e:
            logger.error(f"Policy sync failed: {e}")
            if e.status_code == 404 and self.registered:
                # Server no longer knows this node
                logger.warning("Node unknown to policy source, will register again")
                self.registered = False
            return False

        logger.info(f"Fetched {len(policies)} policies")

        accepted = []
        for policy in policies:
            try:
                for warning in self.engine.validate(policy):
                    logger.debug(f"Policy {policy.name}: {warning}")
            except PolicyValidationError as e:
                logger.error(f"Ignoring invalid policy {policy.name!r}: {e}")
                continue
            accepted.append(policy)

        applicable = self.engine.filter_for_node(accepted, self.identity)
        desired = self.engine.merge_tunnels(applicable)

        result = await self.reconcile(desired)
        if result.aborted:
            return False

        self.current_policies = applicable
        self.last_sync_at = datetime.now(timezone.utc)
        return True

    async def reconcile(self, desired: Dict[str, TunnelConfig]) -> ReconcileResult:
        """
        Converge the backend to `desired`

        Missing tunnels are created, present ones are always updated, and
        tunnels nobody asked for are deleted. A failure on one tunnel is
        logged and skipped; the others still converge.
        """
        result = ReconcileResult()

        try:
            current = {status.name for status in await self.manager.list_tunnels()}
        except Exception as e:
            logger.error(f"Failed to list current tunnels, skipping this cycle: {e}")
            result.aborted = True
            return result

        for name in sorted(desired):
            config = desired[name]
            action = "update" if name in current else "create"
            try:
                self.manager.validate_config(config)
                if action == "update":
                    await self.manager.update_tunnel(config)
                    result.updated.append(name)
                else:
                    await self.manager.create_tunnel(config)
                    result.created.append(name)
            except Exception as e:
                logger.error(f"Failed to {action} tunnel {name}: {e}")
                result.failed[name] = str(e)
                continue
            logger.info(f"{action.capitalize()}d tunnel {name}")

        for name in sorted(current - set(desired)):
            try:
                await self.manager.delete_tunnel(name)
            except Exception as e:
                logger.error(f"Failed to delete tunnel {name}: {e}")
                result.failed[name] = str(e)
                continue
            result.deleted.append(name)
            logger.info(f"Deleted tunnel {name}")

        async with self._lock:
            self._applied = dict(desired)

        return result

    # ------------------------------------------------------------------
    # Health and watchdog
    # ------------------------------------------------------------------

    async def check_health(self) -> None:
        """Observe every applied tunnel; errors are logged, never acted on"""
        for name in await self.applied_tunnels():
            try:
                status = await self.manager.get_tunnel_status(name)
            except Exception as e:
                logger.warning(f"Failed to get status of tunnel {name}: {e}")
                continue

            if status.state == TunnelState.ERROR:
                logger.error(f"Tunnel {name} in error state: {status.error_message or 'no details'}")
            else:
                logger.debug(f"Tunnel {name}: {status.state.value}")

    async def watchdog_check(self) -> List[str]:
        """
        Restart autostart tunnels found down or in error

        Returns:
            Names of tunnels a restart was attempted for
        """
        restarted = []
        for name, config in (await self.applied_tunnels()).items():
            if not config.autostart:
                continue

            try:
                status = await self.manager.get_tunnel_status(name)
            except Exception as e:
                logger.warning(f"Failed to get status of tunnel {name}: {e}")
                continue

            if status.state not in (TunnelState.DOWN, TunnelState.ERROR):
                continue

            logger.warning(f"Tunnel {name} is {status.state.value}, attempting restart")
            restarted.append(name)
            try:
                await self.manager.start_tunnel(name)
            except Exception as e:
                logger.error(f"Failed to restart tunnel {name}: {e}")
            else:
                logger.info(f"Tunnel {name} restarted")

        return restarted


# ----------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------

def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def build_agent(settings: AgentSettings) -> ReconciliationAgent:
    identity = load_or_create_identity(settings.STATE_DIR, node_id=settings.NODE_ID, tags=settings.TAGS or None)
    return ReconciliationAgent(
        identity=identity,
        client=PolicySourceClient(settings.SERVER_URL, timeout=settings.REQUEST_TIMEOUT),
        manager=new_manager(settings.BACKEND, swanctl_dir=settings.SWANCTL_DIR),
        sync_interval=settings.SYNC_INTERVAL,
        health_interval=settings.HEALTH_CHECK_INTERVAL,
        watchdog_interval=settings.WATCHDOG_INTERVAL,
        shutdown_grace=settings.SHUTDOWN_GRACE,
    )


async def run_daemon(agent: ReconciliationAgent) -> None:
    """Run until SIGINT/SIGTERM"""
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    async with agent.manager:
        await agent.start()
        await stop_requested.wait()
        logger.info("Received shutdown signal")
        await agent.stop()
        await agent.report_status(NodeStatus.OFFLINE.value)


async def run_sync_once(agent: ReconciliationAgent) -> bool:
    async with agent.manager:
        if not await agent.register():
            logger.warning("Continuing without registration")
        return await agent.sync_policies()


async def print_tunnels(agent: ReconciliationAgent, show_identity: bool) -> None:
    if show_identity:
        print(f"Node ID:   {agent.identity.id}")
        print(f"Hostname:  {agent.identity.hostname}")
        print(f"Platform:  {agent.identity.platform}")
        print(f"Tags:      {', '.join(agent.identity.tags) or '-'}")
        print(f"Backend:   {agent.manager.name}")
        print()

    async with agent.manager:
        tunnels = await agent.manager.list_tunnels()

    if not tunnels:
        print("No tunnels configured")
        return

    print(f"{'NAME':<24} {'STATE':<12} {'BYTES IN':>12} {'BYTES OUT':>12}  ERROR")
    for status in tunnels:
        print(f"{status.name:<24} {status.state.value:<12} {status.bytes_in:>12} {status.bytes_out:>12}  "
              f"{status.error_message or ''}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="IPsec Management Agent")
    parser.add_argument("command", nargs="?", default="start", choices=["start", "sync", "status", "tunnels"],
                        help="start the daemon, sync once, or show status")
    parser.add_argument("--server", help="Policy source URL (e.g. http://server:8080/api/v1)")
    parser.add_argument("--node-id", help="Node ID (generated and cached if not set)")
    parser.add_argument("--tag", action="append", dest="tags", help="Targeting tag (repeatable)")
    parser.add_argument("--state-dir", help="Directory for the cached node identity")
    parser.add_argument("--backend", choices=BACKENDS, help="Tunnel backend")
    parser.add_argument("--sync-interval", type=float, help="Policy sync interval in seconds")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    parser.add_argument("--log-file", help="Also log to this file")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    overrides = {
        "SERVER_URL": args.server,
        "NODE_ID": args.node_id,
        "TAGS": args.tags,
        "STATE_DIR": args.state_dir,
        "BACKEND": args.backend,
        "SYNC_INTERVAL": args.sync_interval,
        "LOG_LEVEL": args.log_level,
        "LOG_FILE": args.log_file,
    }
    try:
        settings = AgentSettings(**{k: v for k, v in overrides.items() if v is not None})
    except (ValidationError, SettingsError) as e:
        setup_logging()
        logger.error(f"Invalid agent settings: {e}")
        return 1
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    try:
        agent = build_agent(settings)
        if args.command == "start":
            asyncio.run(run_daemon(agent))
        elif args.command == "sync":
            return 0 if asyncio.run(run_sync_once(agent)) else 1
        else:
            asyncio.run(print_tunnels(agent, show_identity=args.command == "status"))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except (IPsecManagerError, OSError) as e:
        logger.error(f"Fatal error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
