# ipsec_manager/ipsec/config_builder.py
"""
swanctl Configuration Builder
Generates one swanctl.conf fragment per tunnel from a TunnelConfig
"""

import base64
import os
import logging
from pathlib import Path
from typing import List, Union

from .models import AuthType, TunnelConfig

logger = logging.getLogger('ipsec-agent.backend.config')

# Rekey at 90% of the SA lifetime
REKEY_RATIO = 0.9


def ike_version_number(version: str) -> int:
    return 1 if version == "ikev1" else 2


def encode_secret(secret: str) -> str:
    """swanctl 0s form: base64, so the secret never needs quoting"""
    return "0s" + base64.b64encode(secret.encode("utf-8")).decode("ascii")


class SwanctlConfigBuilder:
    """
    Builds swanctl configuration from a TunnelConfig

    The output is a pure function of the config, so regenerating the file
    for an unchanged tunnel produces identical bytes.
    """

    indent = "    "

    def child_name(self, tunnel_name: str) -> str:
        return f"{tunnel_name}-child"

    def build_config(self, config: TunnelConfig) -> str:
        """
        Build the swanctl configuration string

        Args:
            config: Tunnel configuration

        Returns:
            Configuration string with a connections section and, for PSK
            tunnels, a secrets section
        """
        crypto = config.crypto
        is_psk = config.auth.type == AuthType.PSK.value
        lifetime = int(crypto.lifetime)
        rekey_time = int(lifetime * REKEY_RATIO)

        lines: List[str] = []
        self._open(lines, 0, "connections")
        self._open(lines, 1, config.name)
        self._set(lines, 2, "version", ike_version_number(crypto.ike_version))
        self._set(lines, 2, "local_addrs", config.local_address)
        self._set(lines, 2, "remote_addrs", config.remote_address)
        self._set(lines, 2, "proposals", crypto.proposal())
        self._set(lines, 2, "dpd_delay", f"{config.dpd.delay}s")
        self._set(lines, 2, "rekey_time", f"{rekey_time}s")

        # [local] / [remote] authentication rounds
        self._open(lines, 2, "local")
        self._set(lines, 3, "auth", "psk" if is_psk else "pubkey")
        if config.local_id:
            self._set(lines, 3, "id", config.local_id)
        if not is_psk and config.auth.cert_path:
            self._set(lines, 3, "certs", config.auth.cert_path)
        self._close(lines, 2)

        self._open(lines, 2, "remote")
        self._set(lines, 3, "auth", "psk" if is_psk else "pubkey")
        if config.remote_id:
            self._set(lines, 3, "id", config.remote_id)
        if not is_psk and config.auth.ca_cert_path:
            self._set(lines, 3, "cacerts", config.auth.ca_cert_path)
        self._close(lines, 2)

        self._open(lines, 2, "children")
        self._open(lines, 3, self.child_name(config.name))
        self._set(lines, 4, "mode", "tunnel" if config.is_tunnel_mode else "transport")
        self._set(lines, 4, "local_ts", ",".join(self._selector(ts.local_subnet, ts.protocol, ts.local_port)
                                                 for ts in config.traffic_selectors))
        self._set(lines, 4, "remote_ts", ",".join(self._selector(ts.remote_subnet, ts.protocol, ts.remote_port)
                                                  for ts in config.traffic_selectors))
        if config.uses_esp:
            self._set(lines, 4, "esp_proposals", crypto.proposal())
        if config.uses_ah:
            self._set(lines, 4, "ah_proposals", crypto.ah_proposal())
        self._set(lines, 4, "dpd_action", config.dpd.action)
        self._set(lines, 4, "life_time", f"{lifetime}s")
        self._set(lines, 4, "rekey_time", f"{rekey_time}s")
        self._set(lines, 4, "start_action", "start" if config.autostart else "trap")
        if config.mark:
            self._set(lines, 4, "mark_in", config.mark)
            self._set(lines, 4, "mark_out", config.mark)
        self._close(lines, 3)
        self._close(lines, 2)

        self._close(lines, 1)
        self._close(lines, 0)

        if is_psk:
            lines.append("")
            self._open(lines, 0, "secrets")
            self._open(lines, 1, f"ike-{config.name}")
            if config.local_id:
                self._set(lines, 2, "id-local", config.local_id)
            if config.remote_id:
                self._set(lines, 2, "id-remote", config.remote_id)
            self._set(lines, 2, "secret", encode_secret(config.auth.secret))
            self._close(lines, 1)
            self._close(lines, 0)

        return "\n".join(lines) + "\n"

    def write_config(self, content: str, path: Union[str, Path]) -> Path:
        """Write config to disk readable by root only (it may hold a PSK)"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            f.write(content)
        os.chmod(path, 0o600)

        logger.debug(f"Wrote swanctl config {path}")
        return path

    def _selector(self, subnet: str, protocol: str, port: int) -> str:
        if not protocol and not port:
            return subnet
        return f"{subnet}[{protocol or '%any'}/{port or '%any'}]"

    def _open(self, lines: List[str], depth: int, name: str) -> None:
        lines.append(f"{self.indent * depth}{name} {{")

    def _close(self, lines: List[str], depth: int) -> None:
        lines.append(f"{self.indent * depth}}}")

    def _set(self, lines: List[str], depth: int, key: str, value) -> None:
        lines.append(f"{self.indent * depth}{key} = {value}")
