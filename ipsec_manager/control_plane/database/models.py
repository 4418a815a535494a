# ipsec_manager/control_plane/database/models.py
"""
SQLAlchemy Database Models for the IPsec Control Plane
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

from ...policy.schema import NodeStatus

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PolicyRecord(Base):
    """
    Policy table - tunnels and targets are stored as JSON so a policy
    round-trips exactly as it was submitted
    """
    __tablename__ = "policies"

    id = Column(String, primary_key=True)
    name = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, default="")
    version = Column(Integer, nullable=False, default=1)
    priority = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)
    targets = Column(JSON, nullable=False, default=list)
    tunnels = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_policies_enabled", "enabled"),
        Index("idx_policies_priority", "priority"),
    )


class NodeRecord(Base):
    """Registered agent nodes"""
    __tablename__ = "nodes"

    id = Column(String, primary_key=True)
    hostname = Column(String, default="")
    platform = Column(String, default="")
    ip_address = Column(String, default="")
    version = Column(String, default="")
    tags = Column(JSON, nullable=False, default=list)
    node_metadata = Column("metadata", JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default=NodeStatus.ONLINE.value)
    registered_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class AuditLog(Base):
    """Who changed which policy, and node registrations and status changes"""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    action = Column(String, nullable=False)          # create, update, delete, register, status
    resource_type = Column(String, nullable=False)   # policy, node
    resource_id = Column(String, nullable=False)
    ip_address = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
