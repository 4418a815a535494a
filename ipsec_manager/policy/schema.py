# ipsec_manager/policy/schema.py
"""
Policy and node identity schemas

Both round-trip losslessly through JSON; the control plane stores them
as JSON and the agent receives them over HTTP.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..ipsec.models import (
    AuthMethod,
    CryptoSuite,
    DPDConfig,
    TrafficSelector,
    TunnelConfig,
)

WILDCARD_TARGET = "*"


class Policy(BaseModel):
    """
    A named, versioned bundle of tunnel configurations plus a targeting rule

    targets holds node ids and/or tags. An empty list, or one containing
    "*", applies the policy to every node.
    """
    id: str = ""
    name: str = ""
    description: str = ""
    version: int = 1
    priority: int = Field(0, description="Higher priority is applied first")
    enabled: bool = True
    tunnels: List[TunnelConfig] = Field(default_factory=list)
    targets: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def targets_all(self) -> bool:
        return not self.targets or WILDCARD_TARGET in self.targets


class NodeIdentity(BaseModel):
    """Durable identity of an agent node"""
    id: str
    hostname: str = ""
    platform: str = ""
    ip_address: str = ""
    version: str = ""
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)


class NodeStatus(str, Enum):
    """Node status as seen by the control plane"""
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class NodeInfo(NodeIdentity):
    """A registered node as the control plane reports it"""
    status: NodeStatus = NodeStatus.ONLINE
    registered_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None


class NodeStatusUpdate(BaseModel):
    status: NodeStatus


def default_policy() -> Policy:
    """Template policy with a single PSK ESP tunnel"""
    now = datetime.now(timezone.utc)
    return Policy(
        name="default-policy",
        description="Example site-to-site tunnel",
        version=1,
        priority=0,
        enabled=True,
        created_at=now,
        updated_at=now,
        tunnels=[
            TunnelConfig(
                name="example-tunnel",
                mode="esp-tunnel",
                local_address="10.0.1.1",
                remote_address="10.0.2.1",
                crypto=CryptoSuite(
                    encryption="aes256",
                    integrity="sha256",
                    dh_group="modp2048",
                    ike_version="ikev2",
                    lifetime=3600,
                ),
                auth=AuthMethod(type="psk", secret="ChangeMe123!"),
                traffic_selectors=[
                    TrafficSelector(local_subnet="10.0.1.0/24", remote_subnet="10.0.2.0/24"),
                ],
                dpd=DPDConfig(delay=30, action="restart"),
                autostart=True,
            ),
        ],
    )
