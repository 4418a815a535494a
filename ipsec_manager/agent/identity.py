# ipsec_manager/agent/identity.py
"""
Node Identity
Collects host information and keeps the node id stable across restarts
"""

import json
import logging
import os
import platform
import socket
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from .. import __version__
from ..policy.schema import NodeIdentity

logger = logging.getLogger('ipsec-agent.identity')

IDENTITY_FILE = "identity.json"


def collect_host_info() -> Dict[str, str]:
    """
    Collect basic host information

    Returns:
        Dict with hostname, platform, ip_address and arch
    """
    return {
        "hostname": socket.gethostname(),
        "platform": platform.system().lower(),
        "ip_address": get_local_ip(),
        "arch": platform.machine(),
    }


def get_local_ip() -> str:
    """Address of the interface that routes to the outside world"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent for a UDP connect
        sock.connect(("192.0.2.1", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


def load_identity(path: Path) -> Optional[NodeIdentity]:
    if not path.exists():
        return None
    try:
        with open(path, 'r') as f:
            return NodeIdentity.model_validate(json.load(f))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable identity cache {path}: {e}")
        return None


def save_identity(identity: NodeIdentity, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    with open(tmp_path, 'w') as f:
        json.dump(identity.model_dump(mode="json"), f, indent=2)
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)


def load_or_create_identity(
    state_dir: Union[str, Path],
    node_id: str = "",
    tags: Optional[List[str]] = None,
) -> NodeIdentity:
    """
    Return this node's identity, creating and caching it on first use

    The id is durable: it comes from the cache when present, otherwise
    from node_id, otherwise a new UUID. Host facts and tags are refreshed
    on every call so the control plane sees current values.

    Args:
        state_dir: Directory holding identity.json
        node_id: Explicit id; overrides the cached one
        tags: Targeting tags; None keeps the cached tags
    """
    path = Path(state_dir) / IDENTITY_FILE
    cached = load_identity(path)

    if node_id:
        identity_id = node_id
    elif cached is not None:
        identity_id = cached.id
    else:
        identity_id = str(uuid.uuid4())
        logger.info(f"Generated new node id {identity_id}")

    host = collect_host_info()
    identity = NodeIdentity(
        id=identity_id,
        hostname=host["hostname"],
        platform=host["platform"],
        ip_address=host["ip_address"],
        version=__version__,
        tags=list(tags) if tags is not None else (cached.tags if cached else []),
        metadata={"arch": host["arch"]},
    )

    if cached is None or cached != identity:
        save_identity(identity, path)
        logger.debug(f"Identity cached in {path}")

    return identity
