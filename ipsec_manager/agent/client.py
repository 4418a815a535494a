# ipsec_manager/agent/client.py
"""
Policy Source Client
HTTP client the agent uses to register and fetch its policies
"""

import logging
from typing import List, Optional

import requests
from pydantic import ValidationError

from ..errors import TransientNetworkError
from ..policy.schema import NodeIdentity, Policy

logger = logging.getLogger('ipsec-agent.client')


class PolicySourceClient:
    """
    Talks to the control plane

    Every transport or HTTP failure is raised as TransientNetworkError;
    the agent retries on its next scheduled tick.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e

        if not response.ok:
            raise TransientNetworkError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def register(self, identity: NodeIdentity) -> dict:
        """POST /register with this node's identity"""
        response = self._request("POST", "/register", json=identity.model_dump(mode="json"))
        try:
            return response.json()
        except ValueError:
            return {}

    def get_policies(self, node_id: str) -> List[Policy]:
        """
        GET /policies?node=<id>

        Malformed entries are skipped so one bad policy cannot block the
        others.
        """
        response = self._request("GET", "/policies", params={"node": node_id})
        try:
            payload = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"invalid JSON from policy source: {e}") from e

        if not isinstance(payload, list):
            raise TransientNetworkError("policy source did not return a list")

        policies = []
        for item in payload:
            try:
                policies.append(Policy.model_validate(item))
            except ValidationError as e:
                name = item.get("name") if isinstance(item, dict) else None
                logger.warning(f"Skipping malformed policy {name!r}: {e.error_count()} errors")
        return policies

    def update_status(self, node_id: str, status: str) -> None:
        """PUT /nodes/<id>/status (online, offline or error)"""
        self._request("PUT", f"/nodes/{node_id}/status", json={"status": status})

    def close(self) -> None:
        self.session.close()
