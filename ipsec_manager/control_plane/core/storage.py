# ipsec_manager/control_plane/core/storage.py
"""
Policy and node storage on top of SQLAlchemy

Records are converted to and from the shared pydantic schemas here so the
API layer never touches ORM objects directly.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from ...policy.schema import NodeIdentity, NodeInfo, NodeStatus, Policy
from ..database.models import AuditLog, NodeRecord, PolicyRecord

logger = logging.getLogger('control-plane.storage')


class DuplicatePolicyName(ValueError):
    """Another policy already uses this name"""

    def __init__(self, name: str):
        super().__init__(f"policy name already exists: {name}")
        self.name = name


# =============================================================================
# Conversions
# =============================================================================

def policy_from_record(record: PolicyRecord) -> Policy:
    return Policy.model_validate({
        "id": record.id,
        "name": record.name,
        "description": record.description or "",
        "version": record.version,
        "priority": record.priority,
        "enabled": record.enabled,
        "targets": record.targets or [],
        "tunnels": record.tunnels or [],
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    })


def node_from_record(record: NodeRecord) -> NodeInfo:
    return NodeInfo(
        id=record.id,
        hostname=record.hostname or "",
        platform=record.platform or "",
        ip_address=record.ip_address or "",
        version=record.version or "",
        tags=record.tags or [],
        metadata=record.node_metadata or {},
        status=record.status or NodeStatus.ONLINE.value,
        registered_at=record.registered_at,
        last_seen_at=record.last_seen_at,
    )


def audit(db: Session, action: str, resource_type: str, resource_id: str,
          ip_address: Optional[str] = None, details: Optional[dict] = None) -> None:
    """Add an audit entry; committed together with the change it describes"""
    db.add(AuditLog(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        ip_address=ip_address,
        details=details,
    ))


def _name_taken(db: Session, name: str, exclude_id: Optional[str] = None) -> bool:
    query = db.query(PolicyRecord).filter(PolicyRecord.name == name)
    if exclude_id:
        query = query.filter(PolicyRecord.id != exclude_id)
    return query.first() is not None


# =============================================================================
# Policies
# =============================================================================

def create_policy(db: Session, policy: Policy, ip_address: Optional[str] = None) -> Policy:
    """Insert a new policy with a fresh id and version 1"""
    if _name_taken(db, policy.name):
        raise DuplicatePolicyName(policy.name)

    now = datetime.now(timezone.utc)
    data = policy.model_dump(mode="json")
    record = PolicyRecord(
        id=str(uuid.uuid4()),
        name=policy.name,
        description=policy.description,
        version=1,
        priority=policy.priority,
        enabled=policy.enabled,
        targets=data["targets"],
        tunnels=data["tunnels"],
        created_at=now,
        updated_at=now,
    )
    db.add(record)
    audit(db, "create", "policy", record.id, ip_address, {"name": policy.name})
    db.commit()
    db.refresh(record)

    logger.info(f"Created policy {record.name} ({record.id})")
    return policy_from_record(record)


def update_policy(db: Session, policy_id: str, policy: Policy,
                  ip_address: Optional[str] = None) -> Optional[Policy]:
    """Replace a policy's content and bump its version; None if absent"""
    record = db.query(PolicyRecord).filter(PolicyRecord.id == policy_id).first()
    if record is None:
        return None
    if _name_taken(db, policy.name, exclude_id=policy_id):
        raise DuplicatePolicyName(policy.name)

    data = policy.model_dump(mode="json")
    record.name = policy.name
    record.description = policy.description
    record.priority = policy.priority
    record.enabled = policy.enabled
    record.targets = data["targets"]
    record.tunnels = data["tunnels"]
    record.version = record.version + 1
    record.updated_at = datetime.now(timezone.utc)

    audit(db, "update", "policy", record.id, ip_address,
          {"name": record.name, "version": record.version})
    db.commit()
    db.refresh(record)

    logger.info(f"Updated policy {record.name} to version {record.version}")
    return policy_from_record(record)


def delete_policy(db: Session, policy_id: str, ip_address: Optional[str] = None) -> bool:
    record = db.query(PolicyRecord).filter(PolicyRecord.id == policy_id).first()
    if record is None:
        return False

    db.delete(record)
    audit(db, "delete", "policy", policy_id, ip_address, {"name": record.name})
    db.commit()

    logger.info(f"Deleted policy {record.name} ({policy_id})")
    return True


def get_policy(db: Session, policy_id: str) -> Optional[Policy]:
    record = db.query(PolicyRecord).filter(PolicyRecord.id == policy_id).first()
    return policy_from_record(record) if record else None


def list_policies(db: Session, enabled_only: bool = False) -> List[Policy]:
    query = db.query(PolicyRecord)
    if enabled_only:
        query = query.filter(PolicyRecord.enabled == True)  # noqa: E712
    records = query.order_by(PolicyRecord.priority.desc(), PolicyRecord.name).all()
    return [policy_from_record(r) for r in records]


# =============================================================================
# Nodes
# =============================================================================

def register_node(db: Session, node: NodeIdentity, ip_address: Optional[str] = None) -> NodeInfo:
    """
    Insert or refresh a node

    Re-registration with the same id updates host facts and tags and
    marks the node online again.
    """
    now = datetime.now(timezone.utc)
    record = db.query(NodeRecord).filter(NodeRecord.id == node.id).first()

    if record is None:
        record = NodeRecord(id=node.id, registered_at=now)
        db.add(record)
        logger.info(f"Registered new node {node.id} ({node.hostname})")
    else:
        logger.debug(f"Node {node.id} re-registered")

    record.hostname = node.hostname
    record.platform = node.platform
    record.ip_address = node.ip_address or (ip_address or "")
    record.version = node.version
    record.tags = list(node.tags)
    record.node_metadata = dict(node.metadata)
    record.status = NodeStatus.ONLINE.value
    record.last_seen_at = now

    audit(db, "register", "node", node.id, ip_address, {"hostname": node.hostname})
    db.commit()
    db.refresh(record)
    return node_from_record(record)


def touch_node(db: Session, node_id: str) -> Optional[NodeInfo]:
    """Record a heartbeat (policy fetch) for a node; None if unknown"""
    record = db.query(NodeRecord).filter(NodeRecord.id == node_id).first()
    if record is None:
        return None
    record.last_seen_at = datetime.now(timezone.utc)
    record.status = NodeStatus.ONLINE.value
    db.commit()
    return node_from_record(record)


def get_node(db: Session, node_id: str) -> Optional[NodeInfo]:
    record = db.query(NodeRecord).filter(NodeRecord.id == node_id).first()
    return node_from_record(record) if record else None


def list_nodes(db: Session) -> List[NodeInfo]:
    return [node_from_record(r) for r in db.query(NodeRecord).order_by(NodeRecord.id).all()]




def update_node_status(db: Session, node_id: str, status: NodeStatus,
                       ip_address: Optional[str] = None) -> Optional[NodeInfo]:
    """Set a node's reported status and refresh last_seen_at; None if unknown"""
    record = db.query(NodeRecord).filter(NodeRecord.id == node_id).first()
    if record is None:
        return None

    previous = record.status
    record.status = status.value
    record.last_seen_at = datetime.now(timezone.utc)
    if previous != record.status:
        audit(db, "status", "node", node_id, ip_address, {"from": previous, "to": record.status})
    db.commit()
    db.refresh(record)

    logger.info(f"Node {node_id} status {previous} -> {record.status}")
    return node_from_record(record)
