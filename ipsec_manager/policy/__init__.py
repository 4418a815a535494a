"""
IPsec policies: schema and engine
"""

from .schema import NodeIdentity, Policy, default_policy
from .engine import (
    PlatformCompatibilityValidator,
    PolicyEngine,
    PolicyValidator,
    SecurityValidator,
    StructuralValidator,
)

__all__ = [
    "NodeIdentity",
    "Policy",
    "default_policy",
    "PolicyEngine",
    "PolicyValidator",
    "StructuralValidator",
    "SecurityValidator",
    "PlatformCompatibilityValidator",
]
