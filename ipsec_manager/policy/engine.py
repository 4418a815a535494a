# ipsec_manager/policy/engine.py
"""
Policy Engine

- validate(): structural, security and platform rule groups, fail fast
- filter_for_node(): which enabled policies target a node, by priority
- merge_tunnels(): tunnel name -> config, highest priority wins
"""

import ipaddress
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from ..errors import PolicyValidationError
from ..ipsec.models import (
    AH_MODES,
    AuthType,
    DHGroup,
    DPDAction,
    EncryptionAlgorithm,
    IKEVersion,
    IntegrityAlgorithm,
    IPsecMode,
    TunnelConfig,
)
from .schema import NodeIdentity, Policy, WILDCARD_TARGET

logger = logging.getLogger('ipsec-manager.policy')

MIN_PSK_LENGTH = 8
MIN_SA_LIFETIME = 5 * 60          # 5 minutes
MAX_SA_LIFETIME = 24 * 60 * 60    # 24 hours

SUPPORTED_MODES = frozenset(m.value for m in IPsecMode)
SUPPORTED_ENCRYPTION = frozenset(e.value for e in EncryptionAlgorithm)
SUPPORTED_INTEGRITY = frozenset(i.value for i in IntegrityAlgorithm)
SUPPORTED_DH_GROUPS = frozenset(g.value for g in DHGroup)
SUPPORTED_IKE_VERSIONS = frozenset(v.value for v in IKEVersion)
SUPPORTED_DPD_ACTIONS = frozenset(a.value for a in DPDAction)
SUPPORTED_PROTOCOLS = frozenset({"", "tcp", "udp", "icmp"})


class PolicyValidator(ABC):
    """
    One group of validation rules

    validate() raises PolicyValidationError on the first violation and
    otherwise returns a (possibly empty) list of non-fatal warnings.
    """

    group = "abstract"

    @abstractmethod
    def validate(self, policy: Policy) -> List[str]:
        pass

    def fail(self, message: str, index: Optional[int] = None,
             tunnel: Optional[TunnelConfig] = None, field: Optional[str] = None):
        raise PolicyValidationError(
            self.group,
            message,
            tunnel_index=index,
            tunnel_name=tunnel.name if tunnel is not None else None,
            field=field,
        )


class StructuralValidator(PolicyValidator):
    """Required fields, at least one tunnel and one traffic selector per tunnel"""

    group = "structural"

    def validate(self, policy: Policy) -> List[str]:
        if not policy.name:
            self.fail("policy name is required", field="name")

        if not policy.tunnels:
            self.fail("policy must contain at least one tunnel", field="tunnels")

        seen = set()
        for i, tunnel in enumerate(policy.tunnels):
            self._validate_tunnel(i, tunnel)
            if tunnel.name in seen:
                self.fail(f"duplicate tunnel name {tunnel.name!r}", i, tunnel, "name")
            seen.add(tunnel.name)

        return []

    def _validate_tunnel(self, i: int, tunnel: TunnelConfig) -> None:
        if not tunnel.name:
            self.fail("tunnel name is required", i, tunnel, "name")

        if not tunnel.local_address:
            self.fail("local address is required", i, tunnel, "local_address")

        if not tunnel.remote_address:
            self.fail("remote address is required", i, tunnel, "remote_address")

        if tunnel.mode not in SUPPORTED_MODES:
            self.fail(f"unknown mode: {tunnel.mode}", i, tunnel, "mode")

        if not tunnel.traffic_selectors:
            self.fail("at least one traffic selector is required", i, tunnel, "traffic_selectors")

        for j, ts in enumerate(tunnel.traffic_selectors):
            prefix = f"traffic_selectors[{j}]"
            for attr in ("local_subnet", "remote_subnet"):
                subnet = getattr(ts, attr)
                if not subnet:
                    self.fail(f"traffic selector {j}: {attr.replace('_', ' ')} is required",
                              i, tunnel, f"{prefix}.{attr}")
                try:
                    ipaddress.ip_network(subnet, strict=False)
                except ValueError:
                    self.fail(f"traffic selector {j}: invalid subnet {subnet!r}",
                              i, tunnel, f"{prefix}.{attr}")

            if ts.protocol not in SUPPORTED_PROTOCOLS:
                self.fail(f"traffic selector {j}: unsupported protocol {ts.protocol!r}",
                          i, tunnel, f"{prefix}.protocol")

            for attr in ("local_port", "remote_port"):
                port = getattr(ts, attr)
                if not 0 <= port <= 65535:
                    self.fail(f"traffic selector {j}: port {port} out of range",
                              i, tunnel, f"{prefix}.{attr}")

        if tunnel.dpd.action not in SUPPORTED_DPD_ACTIONS:
            self.fail(f"unknown DPD action: {tunnel.dpd.action}", i, tunnel, "dpd.action")
        if tunnel.dpd.delay < 0:
            self.fail("DPD delay must not be negative", i, tunnel, "dpd.delay")


class SecurityValidator(PolicyValidator):
    """Authentication strength, supported algorithms, SA lifetime bounds"""

    group = "security"

    def validate(self, policy: Policy) -> List[str]:
        for i, tunnel in enumerate(policy.tunnels):
            auth = tunnel.auth
            if auth.type == AuthType.PSK.value:
                if not auth.secret:
                    self.fail("PSK secret is required", i, tunnel, "auth.secret")
                if len(auth.secret) < MIN_PSK_LENGTH:
                    self.fail(f"PSK secret must be at least {MIN_PSK_LENGTH} characters",
                              i, tunnel, "auth.secret")
            elif auth.type == AuthType.CERTIFICATE.value:
                if not auth.cert_path:
                    self.fail("certificate path is required", i, tunnel, "auth.cert_path")
                if not auth.key_path:
                    self.fail("private key path is required", i, tunnel, "auth.key_path")
            else:
                self.fail(f"unsupported authentication method: {auth.type}", i, tunnel, "auth.type")

            crypto = tunnel.crypto
            if crypto.encryption not in SUPPORTED_ENCRYPTION:
                self.fail(f"invalid encryption algorithm: {crypto.encryption}", i, tunnel, "crypto.encryption")
            if crypto.integrity not in SUPPORTED_INTEGRITY:
                self.fail(f"invalid integrity algorithm: {crypto.integrity}", i, tunnel, "crypto.integrity")
            if crypto.dh_group not in SUPPORTED_DH_GROUPS:
                self.fail(f"invalid DH group: {crypto.dh_group}", i, tunnel, "crypto.dh_group")
            if crypto.ike_version not in SUPPORTED_IKE_VERSIONS:
                self.fail(f"invalid IKE version: {crypto.ike_version}", i, tunnel, "crypto.ike_version")

            if not crypto.lifetime:
                self.fail("SA lifetime must be specified", i, tunnel, "crypto.lifetime")
            if crypto.lifetime < MIN_SA_LIFETIME:
                self.fail("SA lifetime too short (minimum 5 minutes)", i, tunnel, "crypto.lifetime")
            if crypto.lifetime > MAX_SA_LIFETIME:
                self.fail("SA lifetime too long (maximum 24 hours)", i, tunnel, "crypto.lifetime")

        return []


class PlatformCompatibilityValidator(PolicyValidator):
    """
    Combinations backends cannot be expected to support

    GCM needs IKEv2 and is fatal. AH and ESP+AH modes only produce a
    warning; individual backends may still reject them.
    """

    group = "platform"

    def validate(self, policy: Policy) -> List[str]:
        warnings = []
        for i, tunnel in enumerate(policy.tunnels):
            if tunnel.crypto.is_gcm and tunnel.crypto.ike_version != IKEVersion.IKEV2.value:
                self.fail("GCM encryption requires IKEv2", i, tunnel, "crypto.ike_version")

            if tunnel.mode in AH_MODES:
                warnings.append(
                    f"tunnel {i} ({tunnel.name}): mode {tunnel.mode} has reduced support on some platforms"
                )
        return warnings


def _priority_key(policy: Policy):
    return (-policy.priority, policy.name, policy.id)


def sort_policies(policies: Iterable[Policy]) -> List[Policy]:
    """Descending priority, ties broken by name then id"""
    return sorted(policies, key=_priority_key)


class PolicyEngine:
    """
    Validates policies and resolves the tunnels a node should run
    """

    def __init__(self, validators: Optional[List[PolicyValidator]] = None):
        self.validators = validators if validators is not None else [
            StructuralValidator(),
            SecurityValidator(),
            PlatformCompatibilityValidator(),
        ]

    def validate(self, policy: Policy) -> List[str]:
        """
        Run every rule group in order

        Returns:
            Non-fatal warnings

        Raises:
            PolicyValidationError: on the first violated rule
        """
        warnings: List[str] = []
        for validator in self.validators:
            warnings.extend(validator.validate(policy))
        return warnings

    def is_applicable(self, policy: Policy, node: NodeIdentity) -> bool:
        if not policy.enabled:
            return False
        if policy.targets_all:
            return True
        targets = set(policy.targets)
        return node.id in targets or bool(targets.intersection(node.tags))

    def filter_for_node(self, policies: Iterable[Policy], node: NodeIdentity) -> List[Policy]:
        """Enabled policies targeting the node, highest priority first"""
        return sort_policies(p for p in policies if self.is_applicable(p, node))

    def merge_tunnels(self, policies: Iterable[Policy]) -> Dict[str, TunnelConfig]:
        """
        Union of tunnels keyed by name

        Policies are walked in priority order and the first definition of
        a name is kept, so the highest-priority policy always wins.
        """
        tunnels: Dict[str, TunnelConfig] = {}
        for policy in sort_policies(policies):
            for tunnel in policy.tunnels:
                if tunnel.name in tunnels:
                    logger.debug(f"Tunnel {tunnel.name} from policy {policy.name} shadowed by higher priority policy")
                    continue
                tunnels[tunnel.name] = tunnel
        return tunnels

    def desired_tunnels(self, policies: Iterable[Policy], node: NodeIdentity) -> Dict[str, TunnelConfig]:
        return self.merge_tunnels(self.filter_for_node(policies, node))
