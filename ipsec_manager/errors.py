# ipsec_manager/errors.py
"""
Error taxonomy shared by the agent, the backends and the control plane

- PolicyValidationError: a policy or tunnel config breaks a rule
- TransientNetworkError: talking to the policy source failed, retry later
- BackendError: one tunnel operation failed on the backend
- ContractViolation: backend data does not fit the lifecycle state machine
"""

from typing import Optional


class IPsecManagerError(Exception):
    """Base class for all errors raised by this package"""


class PolicyValidationError(IPsecManagerError):
    """
    Raised when a policy fails validation

    Attributes:
        group: Rule group that failed (structural, security, platform)
        message: Human readable reason
        tunnel_index: Index of the offending tunnel, if any
        tunnel_name: Name of the offending tunnel, if any
        field: Offending field path, if known
    """

    def __init__(
        self,
        group: str,
        message: str,
        tunnel_index: Optional[int] = None,
        tunnel_name: Optional[str] = None,
        field: Optional[str] = None,
    ):
        self.group = group
        self.message = message
        self.tunnel_index = tunnel_index
        self.tunnel_name = tunnel_name
        self.field = field
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.tunnel_index is None:
            return f"{self.group} validation failed: {self.message}"
        return (
            f"{self.group} validation failed: tunnel {self.tunnel_index} "
            f"({self.tunnel_name or '?'}): {self.message}"
        )

    def to_dict(self) -> dict:
        return {
            "group": self.group,
            "message": self.message,
            "tunnel_index": self.tunnel_index,
            "tunnel_name": self.tunnel_name,
            "field": self.field,
        }


class TransientNetworkError(IPsecManagerError):
    """
    Request to the policy source failed; retried on the next tick

    status_code is the HTTP status when the server answered, None for
    transport failures.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class BackendError(IPsecManagerError):
    """A backend operation on a single tunnel failed"""

    def __init__(self, message: str, tunnel: Optional[str] = None, operation: Optional[str] = None):
        self.tunnel = tunnel
        self.operation = operation
        super().__init__(message)


class TunnelNotFound(BackendError):
    """The backend has no tunnel with the requested name"""

    def __init__(self, tunnel: str, operation: Optional[str] = None):
        super().__init__(f"tunnel not found: {tunnel}", tunnel=tunnel, operation=operation)


class ConfigRejected(BackendError):
    """The backend cannot realise an otherwise policy-valid config"""


class ContractViolation(IPsecManagerError):
    """Backend reported data inconsistent with the tunnel lifecycle"""


class InvalidTransition(ContractViolation):
    """A lifecycle transition that is not an allowed edge"""

    def __init__(self, tunnel: str, source, target):
        self.tunnel = tunnel
        self.source = source
        self.target = target
        super().__init__(f"invalid transition for {tunnel}: {_state_value(source)} -> {_state_value(target)}")


class UnsupportedPlatform(IPsecManagerError):
    """No backend is available for the current platform"""


def _state_value(state) -> str:
    return getattr(state, "value", str(state))
