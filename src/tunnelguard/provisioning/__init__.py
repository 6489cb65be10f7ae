"""
TunnelGuard Provisioning Module

Install state machine and the peer entry points built on it.
"""

from .orchestrator import Collaborators, ProvisioningOrchestrator
from .state import InstallPaths, ProvisionResult, ProvisionState

__all__ = [
    "Collaborators",
    "InstallPaths",
    "ProvisioningOrchestrator",
    "ProvisionResult",
    "ProvisionState",
]
