# ipsec_manager/control_plane/api/v1/endpoints.py
"""
Control plane REST API (v1)

Agents register and fetch their policies here; operators manage
policies through the CRUD endpoints.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ....errors import PolicyValidationError
from ....policy.engine import PolicyEngine
from ....policy.schema import NodeIdentity, NodeInfo, NodeStatusUpdate, Policy, default_policy
from ...config import settings
from ...core import storage
from ...database.session import get_db

logger = logging.getLogger('control-plane.api')

router = APIRouter()
engine = PolicyEngine()


# =============================================================================
# Helpers
# =============================================================================

def verify_admin_token(x_admin_token: Optional[str] = Header(None)):
    """Check X-Admin-Token when an admin secret is configured"""
    if settings.ADMIN_SECRET and x_admin_token != settings.ADMIN_SECRET:
        raise HTTPException(status_code=401, detail="Invalid admin token")
    return x_admin_token


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _validate(policy: Policy) -> None:
    try:
        warnings = engine.validate(policy)
    except PolicyValidationError as e:
        logger.info(f"Rejected policy {policy.name!r}: {e}")
        raise HTTPException(status_code=400, detail=e.to_dict())
    for warning in warnings:
        logger.warning(f"Policy {policy.name!r}: {warning}")


# =============================================================================
# Agent Endpoints
# =============================================================================

@router.post("/register", response_model=NodeInfo, status_code=201)
def register(node: NodeIdentity, request: Request, db: Session = Depends(get_db)):
    """Agent calls this on startup (and until it succeeds)"""
    if not node.id:
        raise HTTPException(status_code=400, detail="node id is required")
    return storage.register_node(db, node, _client_ip(request))


@router.get("/policies", response_model=List[Policy])
def list_policies(
    node: Optional[str] = Query(None, description="Only policies applicable to this node"),
    enabled: Optional[bool] = Query(None),
    db: Session = Depends(get_db),
):
    """
    List policies

    With ?node=<id> the result is what that node should run: enabled
    policies targeting it, highest priority first. Unknown nodes get 404.
    """
    if node is not None:
        identity = storage.touch_node(db, node)
        if identity is None:
            raise HTTPException(status_code=404, detail="Node not found")
        return engine.filter_for_node(storage.list_policies(db, enabled_only=True), identity)

    policies = storage.list_policies(db, enabled_only=bool(enabled))
    if enabled is False:
        policies = [p for p in policies if not p.enabled]
    return policies


@router.get("/policies/template", response_model=Policy)
def get_policy_template():
    """Example policy to start from"""
    return default_policy()


@router.post("/policies", response_model=Policy, status_code=201)
def create_policy(
    policy: Policy,
    request: Request,
    db: Session = Depends(get_db),
    _: Optional[str] = Depends(verify_admin_token),
):
    _validate(policy)
    try:
        return storage.create_policy(db, policy, _client_ip(request))
    except storage.DuplicatePolicyName as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/policies/{policy_id}", response_model=Policy)
def get_policy(policy_id: str, db: Session = Depends(get_db)):
    policy = storage.get_policy(db, policy_id)
    if policy is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    return policy


@router.put("/policies/{policy_id}", response_model=Policy)
def update_policy(
    policy_id: str,
    policy: Policy,
    request: Request,
    db: Session = Depends(get_db),
    _: Optional[str] = Depends(verify_admin_token),
):
    """Replace a policy; the stored version is bumped"""
    _validate(policy)
    try:
        updated = storage.update_policy(db, policy_id, policy, _client_ip(request))
    except storage.DuplicatePolicyName as e:
        raise HTTPException(status_code=409, detail=str(e))
    if updated is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    return updated


@router.delete("/policies/{policy_id}")
def delete_policy(
    policy_id: str,
    request: Request,
    db: Session = Depends(get_db),
    _: Optional[str] = Depends(verify_admin_token),
):
    if not storage.delete_policy(db, policy_id, _client_ip(request)):
        raise HTTPException(status_code=404, detail="Policy not found")
    return {"status": "deleted", "id": policy_id}


# =============================================================================
# Nodes
# =============================================================================

@router.get("/nodes", response_model=List[NodeInfo])
def list_nodes(db: Session = Depends(get_db)):
    return storage.list_nodes(db)


@router.get("/nodes/{node_id}", response_model=NodeInfo)
def get_node(node_id: str, db: Session = Depends(get_db)):
    node = storage.get_node(db, node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    return node


@router.put("/nodes/{node_id}/status", response_model=NodeInfo)
def update_node_status(node_id: str, update: NodeStatusUpdate, request: Request, db: Session = Depends(get_db)):
    """Agents report online, offline (on shutdown) or error"""
    node = storage.update_node_status(db, node_id, update.status, _client_ip(request))
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    return node
