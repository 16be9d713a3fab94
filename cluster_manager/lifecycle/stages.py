"""
Cluster lifecycle state machine.

Allowed status transitions and the ordered provisioning stages. Every status
write made by the lifecycle manager is checked against TRANSITIONS.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

from cluster_manager.errors import InvalidTransitionError
from cluster_manager.models.cluster import ClusterStatus

S = ClusterStatus

# Staying in the same status (next stage of the same phase) is always allowed
TRANSITIONS: Dict[ClusterStatus, FrozenSet[ClusterStatus]] = {
    S.INITIALIZING: frozenset({S.PROVISIONING, S.ERROR, S.TERMINATED}),
    S.PROVISIONING: frozenset({S.CONFIGURING, S.ERROR, S.TERMINATED}),
    S.CONFIGURING: frozenset({S.TESTING, S.ACTIVE, S.ERROR, S.TERMINATED}),
    S.TESTING: frozenset({S.ACTIVE, S.ERROR, S.TERMINATED}),
    S.ACTIVE: frozenset({S.CONFIGURING, S.ERROR, S.TERMINATED}),
    S.ERROR: frozenset({S.TERMINATED}),
    S.TERMINATED: frozenset(),
}


def can_transition(current: ClusterStatus, target: ClusterStatus) -> bool:
    return current == target or target in TRANSITIONS[current]


def validate_transition(cluster_id: str, current: ClusterStatus, target: ClusterStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(cluster_id, current.value, target.value)


@dataclass(frozen=True)
class Stage:
    """One provisioning step: the status and progress it reports."""

    name: str
    status: ClusterStatus
    progress: int
    message: str


PROVISIONING_STAGES: Tuple[Stage, ...] = (
    Stage("allocate_compute", S.PROVISIONING, 10, "Allocating compute resources..."),
    Stage("setup_storage", S.PROVISIONING, 25, "Setting up storage volumes..."),
    Stage("install_engine", S.PROVISIONING, 40, "Installing ClickHouse..."),
    Stage("configure_settings", S.CONFIGURING, 60, "Configuring cluster settings..."),
    Stage("configure_users", S.CONFIGURING, 75, "Setting up users and permissions..."),
    Stage("health_checks", S.TESTING, 90, "Running health checks..."),
    Stage("initialize_schema", S.TESTING, 100, "Creating telemetry tables and views..."),
)

SCHEMA_STAGE = PROVISIONING_STAGES[-1]

INITIALIZING_MESSAGE = "Initializing cluster provisioning..."
READY_MESSAGE = "Cluster is ready for use"
SCHEMA_FAILED_MESSAGE = "Failed to initialize cluster"

REBALANCE_STAGE = Stage("rebalance", S.CONFIGURING, 50, "Rebalancing data across nodes...")
SCALED_MESSAGE = "Cluster scaling completed"
TERMINATED_MESSAGE = "Cluster terminated"


def resume_index(progress: int) -> int:
    """
    Index of the first stage not yet reached at this progress.

    Returns len(PROVISIONING_STAGES) when every stage has been reached.
    """
    for index, stage in enumerate(PROVISIONING_STAGES):
        if stage.progress > progress:
            return index
    return len(PROVISIONING_STAGES)
