"""
IPsec Node Agent

Runs on every node, registers with the control plane and keeps the
node's IPsec tunnels converged to the policies that target it:
- Policy sync loop: fetch, filter, merge, reconcile
- Health check loop: observe tunnel state
- Watchdog loop: restart autostart tunnels that went down
"""

__all__ = ["ReconciliationAgent", "ReconcileResult", "PolicySourceClient", "load_or_create_identity"]

from .agent import ReconciliationAgent, ReconcileResult
from .client import PolicySourceClient
from .identity import load_or_create_identity
