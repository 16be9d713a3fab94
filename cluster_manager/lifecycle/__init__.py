"""
Cluster lifecycle: state machine, provisioning backends and the manager
that drives clusters through them.
"""

from cluster_manager.lifecycle.backends import ProvisioningBackend, SimulatedProvisioningBackend
from cluster_manager.lifecycle.manager import LifecycleManager
from cluster_manager.lifecycle.stages import (
    PROVISIONING_STAGES,
    TRANSITIONS,
    can_transition,
    validate_transition,
)

__all__ = [
    "LifecycleManager",
    "ProvisioningBackend",
    "SimulatedProvisioningBackend",
    "PROVISIONING_STAGES",
    "TRANSITIONS",
    "can_transition",
    "validate_transition",
]
