# ipsec_manager/ipsec/strongswan.py
"""
strongSwan backend for Linux

Manages tunnels through swanctl:
- one conf.d/<name>.conf file per tunnel
- swanctl --load-all after every config change
- swanctl --initiate / --terminate for start / stop
- swanctl --list-sas for status
"""

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from ..errors import BackendError, ConfigRejected, TunnelNotFound
from .config_builder import SwanctlConfigBuilder
from .manager import TunnelManager
from .models import AuthType, IKEVersion, TunnelConfig, TunnelStatus
from .states import TunnelState

logger = logging.getLogger('ipsec-agent.backend.strongswan')

TUNNEL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
# Characters that would end a value or open a section in swanctl.conf
UNSAFE_VALUE_RE = re.compile(r'[{}"#\r\n]')

# IKE SA states printed by swanctl --list-sas
IKE_STATE_MAP = {
    "CREATED": TunnelState.CONNECTING,
    "CONNECTING": TunnelState.CONNECTING,
    "ESTABLISHED": TunnelState.ESTABLISHED,
    "PASSIVE": TunnelState.ESTABLISHED,
    "REKEYED": TunnelState.ESTABLISHED,
    "REKEYING": TunnelState.REKEYING,
    "DELETING": TunnelState.DOWN,
    "DESTROYING": TunnelState.DOWN,
}

_COUNTER_RE = re.compile(r"^\s+(in|out)\s+\S+,\s+(\d+) bytes,\s+(\d+) packets", re.MULTILINE)
_ESTABLISHED_RE = re.compile(r"established (\d+)s ago")
_INSTALLED_RE = re.compile(r"installed (\d+)s ago")


def parse_list_sas(name: str, output: str, now: Optional[datetime] = None) -> TunnelStatus:
    """
    Parse `swanctl --list-sas --ike <name>` output into a TunnelStatus

    No SA for the connection means the tunnel is down. An IKE state the
    state machine does not know is reported as error.
    """
    now = now or datetime.now(timezone.utc)
    status = TunnelStatus(name=name, state=TunnelState.DOWN)

    header = re.search(rf"^{re.escape(name)}: #\d+, (\w+),", output, re.MULTILINE)
    if not header:
        return status

    ike_state = header.group(1)
    if ike_state in IKE_STATE_MAP:
        status.state = IKE_STATE_MAP[ike_state]
    else:
        status.state = TunnelState.parse(ike_state)
        status.error_message = f"unexpected IKE state {ike_state}"

    established = _ESTABLISHED_RE.search(output)
    if established:
        status.established_at = now - timedelta(seconds=int(established.group(1)))

    installed = _INSTALLED_RE.search(output)
    if installed:
        status.last_rekey_at = now - timedelta(seconds=int(installed.group(1)))

    for direction, nbytes, npackets in _COUNTER_RE.findall(output):
        if direction == "in":
            status.bytes_in += int(nbytes)
            status.packets_in += int(npackets)
        else:
            status.bytes_out += int(nbytes)
            status.packets_out += int(npackets)

    return status


class StrongSwanManager(TunnelManager):
    """
    Manages IPsec tunnels with strongSwan's swanctl
    """

    name = "strongswan"

    def __init__(self, conf_dir: str = "/etc/swanctl", swanctl: str = "swanctl"):
        """
        Initialize strongSwan manager

        Args:
            conf_dir: swanctl configuration directory
            swanctl: swanctl executable
        """
        self.conf_dir = Path(conf_dir)
        self.tunnel_dir = self.conf_dir / "conf.d"
        self.swanctl = swanctl
        self.builder = SwanctlConfigBuilder()

    def config_path(self, name: str) -> Path:
        return self.tunnel_dir / f"{name}.conf"

    async def _run(self, *args: str) -> Tuple[int, str, str]:
        """Run swanctl and return (returncode, stdout, stderr)"""
        logger.debug(f"Running: {self.swanctl} {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.swanctl, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise BackendError(f"{self.swanctl} not found: {e}") from e

        stdout, stderr = await proc.communicate()
        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def initialize(self) -> None:
        returncode, stdout, stderr = await self._run("--version")
        if returncode != 0:
            raise BackendError(f"swanctl is not usable: {stderr.strip() or stdout.strip()}")

        self.tunnel_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"strongSwan backend initialized ({stdout.strip()})")

    async def cleanup(self) -> None:
        # Tunnels stay configured; the charon daemon keeps running
        logger.info("strongSwan backend released")

    def validate_config(self, config: TunnelConfig) -> None:
        if not TUNNEL_NAME_RE.match(config.name or ""):
            raise ConfigRejected(
                f"tunnel name {config.name!r} is not usable as a swanctl connection name",
                tunnel=config.name, operation="validate",
            )
        if config.crypto.ike_version not in (IKEVersion.IKEV1.value, IKEVersion.IKEV2.value):
            raise ConfigRejected(f"unsupported IKE version {config.crypto.ike_version}",
                                 tunnel=config.name, operation="validate")
        if config.auth.type == AuthType.PSK.value and not config.auth.secret:
            raise ConfigRejected("PSK secret is required", tunnel=config.name, operation="validate")
        for field, value in (("local_address", config.local_address), ("remote_address", config.remote_address),
                             ("local_id", config.local_id), ("remote_id", config.remote_id),
                             ("mark", config.mark), ("auth.cert_path", config.auth.cert_path),
                             ("auth.ca_cert_path", config.auth.ca_cert_path)):
            if value and UNSAFE_VALUE_RE.search(value):
                raise ConfigRejected(f"{field} contains characters not allowed in swanctl config",
                                     tunnel=config.name, operation="validate")
        if config.auth.type == AuthType.CERTIFICATE.value:
            for path in (config.auth.cert_path, config.auth.key_path):
                if not path or not Path(path).exists():
                    raise ConfigRejected(f"certificate file not found: {path!r}",
                                         tunnel=config.name, operation="validate")

    async def _reload(self) -> None:
        returncode, stdout, stderr = await self._run("--load-all")
        if returncode != 0:
            raise BackendError(f"failed to load swanctl config: {stderr.strip() or stdout.strip()}",
                               operation="load")

    async def create_tunnel(self, config: TunnelConfig) -> None:
        self.validate_config(config)

        content = self.builder.build_config(config)
        self.builder.write_config(content, self.config_path(config.name))

        try:
            await self._reload()
        except BackendError as e:
            raise BackendError(str(e), tunnel=config.name, operation="create") from e

        logger.info(f"Tunnel {config.name} configured")

    async def update_tunnel(self, config: TunnelConfig) -> None:
        # swanctl has no in-place update: delete then create
        try:
            await self.delete_tunnel(config.name)
        except BackendError as e:
            logger.warning(f"Failed to delete {config.name} during update: {e}")
        await self.create_tunnel(config)

    async def delete_tunnel(self, name: str) -> None:
        try:
            await self.stop_tunnel(name)
        except BackendError as e:
            logger.debug(f"Stop before delete of {name} failed: {e}")

        path = self.config_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise BackendError(f"failed to remove {path}: {e}", tunnel=name, operation="delete") from e

        try:
            await self._reload()
        except BackendError as e:
            logger.warning(f"Failed to reload config after deleting {name}: {e}")

        logger.info(f"Tunnel {name} deleted")

    async def start_tunnel(self, name: str) -> None:
        if not self.config_path(name).exists():
            raise TunnelNotFound(name, operation="start")

        returncode, stdout, stderr = await self._run("--initiate", "--child", self.builder.child_name(name))
        if returncode != 0:
            raise BackendError(f"failed to start tunnel {name}: {stderr.strip() or stdout.strip()}",
                               tunnel=name, operation="start")
        logger.info(f"Tunnel {name} initiated")

    async def stop_tunnel(self, name: str) -> None:
        returncode, stdout, stderr = await self._run("--terminate", "--ike", name)
        if returncode != 0:
            raise BackendError(f"failed to stop tunnel {name}: {stderr.strip() or stdout.strip()}",
                               tunnel=name, operation="stop")
        logger.info(f"Tunnel {name} terminated")

    async def get_tunnel_status(self, name: str) -> TunnelStatus:
        if not self.config_path(name).exists():
            raise TunnelNotFound(name, operation="status")

        returncode, stdout, stderr = await self._run("--list-sas", "--ike", name)
        if returncode != 0:
            status = TunnelStatus(name=name, state=TunnelState.ERROR,
                                  error_message=stderr.strip() or "swanctl --list-sas failed")
            return status

        return parse_list_sas(name, stdout)

    async def list_tunnels(self) -> List[TunnelStatus]:
        if not self.tunnel_dir.exists():
            return []

        tunnels = []
        for path in sorted(self.tunnel_dir.glob("*.conf")):
            try:
                tunnels.append(await self.get_tunnel_status(path.stem))
            except BackendError as e:
                logger.warning(f"Failed to get status of {path.stem}: {e}")
        return tunnels
