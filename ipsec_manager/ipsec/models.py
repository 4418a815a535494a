# ipsec_manager/ipsec/models.py
"""
Tunnel Configuration Model

Value types describing one IPsec tunnel (addressing, crypto suite,
authentication, traffic selectors, dead peer detection) and the status
a backend reports for it.

Enumerated fields are stored as plain strings so that an unsupported
value survives deserialization and is reported by the policy engine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .states import TunnelState


class IPsecMode(str, Enum):
    """IPsec operating mode"""
    ESP_TUNNEL = "esp-tunnel"
    ESP_TRANSPORT = "esp-transport"
    AH_TUNNEL = "ah-tunnel"
    AH_TRANSPORT = "ah-transport"
    ESP_AH_TUNNEL = "esp-ah-tunnel"


class AuthType(str, Enum):
    PSK = "psk"
    CERTIFICATE = "certificate"


class EncryptionAlgorithm(str, Enum):
    AES128 = "aes128"
    AES256 = "aes256"
    AES128GCM = "aes128gcm"
    AES256GCM = "aes256gcm"
    TRIPLE_DES = "3des"


class IntegrityAlgorithm(str, Enum):
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"


class DHGroup(str, Enum):
    MODP1024 = "modp1024"
    MODP1536 = "modp1536"
    MODP2048 = "modp2048"
    MODP3072 = "modp3072"
    MODP4096 = "modp4096"
    MODP8192 = "modp8192"
    ECP256 = "ecp256"
    ECP384 = "ecp384"
    ECP521 = "ecp521"


class IKEVersion(str, Enum):
    IKEV1 = "ikev1"
    IKEV2 = "ikev2"


class DPDAction(str, Enum):
    RESTART = "restart"
    CLEAR = "clear"
    HOLD = "hold"
    NONE = "none"


GCM_ALGORITHMS = frozenset({EncryptionAlgorithm.AES128GCM.value, EncryptionAlgorithm.AES256GCM.value})
AH_MODES = frozenset({IPsecMode.AH_TUNNEL.value, IPsecMode.AH_TRANSPORT.value, IPsecMode.ESP_AH_TUNNEL.value})
TUNNEL_MODES = frozenset({IPsecMode.ESP_TUNNEL.value, IPsecMode.AH_TUNNEL.value, IPsecMode.ESP_AH_TUNNEL.value})


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class CryptoSuite(_Frozen):
    """Cryptographic parameters shared by IKE and the child SAs"""
    encryption: str = EncryptionAlgorithm.AES256.value
    integrity: str = IntegrityAlgorithm.SHA256.value
    dh_group: str = DHGroup.MODP2048.value
    ike_version: str = IKEVersion.IKEV2.value
    lifetime: int = Field(3600, description="SA lifetime in seconds")

    def proposal(self) -> str:
        """ESP/IKE proposal token: <encryption>-<integrity>-<dhgroup>"""
        return f"{self.encryption}-{self.integrity}-{self.dh_group}"

    def ah_proposal(self) -> str:
        """AH proposal token; AH authenticates only, so no cipher"""
        return f"{self.integrity}-{self.dh_group}"

    @property
    def is_gcm(self) -> bool:
        return self.encryption in GCM_ALGORITHMS


class AuthMethod(_Frozen):
    """Pre-shared key or certificate authentication"""
    type: str = AuthType.PSK.value
    secret: str = ""
    cert_path: str = ""
    key_path: str = ""
    ca_cert_path: str = ""


class TrafficSelector(_Frozen):
    """Which packets the tunnel protects"""
    local_subnet: str = ""
    remote_subnet: str = ""
    protocol: str = ""
    local_port: int = 0
    remote_port: int = 0


class DPDConfig(_Frozen):
    """Dead peer detection"""
    delay: int = Field(30, description="Probe interval in seconds")
    action: str = DPDAction.RESTART.value


class TunnelConfig(_Frozen):
    """
    Complete configuration of one tunnel

    Identified by name across reconciliation cycles. Never mutated in
    place: an update replaces the whole value.
    """
    name: str = ""
    mode: str = IPsecMode.ESP_TUNNEL.value
    local_address: str = ""
    remote_address: str = ""
    local_id: Optional[str] = None
    remote_id: Optional[str] = None
    crypto: CryptoSuite = Field(default_factory=CryptoSuite)
    auth: AuthMethod = Field(default_factory=AuthMethod)
    traffic_selectors: List[TrafficSelector] = Field(default_factory=list)
    dpd: DPDConfig = Field(default_factory=DPDConfig)
    autostart: bool = True
    mark: Optional[str] = None

    @property
    def uses_ah(self) -> bool:
        return self.mode in AH_MODES

    @property
    def uses_esp(self) -> bool:
        return self.mode not in (IPsecMode.AH_TUNNEL.value, IPsecMode.AH_TRANSPORT.value)

    @property
    def is_tunnel_mode(self) -> bool:
        return self.mode in TUNNEL_MODES


class TunnelStatus(BaseModel):
    """Observed runtime state of one tunnel, produced by the backend"""
    name: str
    state: TunnelState = TunnelState.DOWN
    local_address: str = ""
    remote_address: str = ""
    established_at: Optional[datetime] = None
    last_rekey_at: Optional[datetime] = None
    bytes_in: int = 0
    bytes_out: int = 0
    packets_in: int = 0
    packets_out: int = 0
    error_message: Optional[str] = None

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value):
        return TunnelState.parse(value)


class TrafficStats(BaseModel):
    """Traffic counters for one tunnel at a point in time"""
    bytes_in: int = 0
    bytes_out: int = 0
    packets_in: int = 0
    packets_out: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
