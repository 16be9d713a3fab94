"""
Control-plane store interface.

The store is the single source of truth for cluster status, provisioning
progress and health; components read and write it instead of keeping their
own copies.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

from cluster_manager.errors import ClusterNotFoundError
from cluster_manager.models.cluster import (
    Cluster,
    ClusterStatus,
    HealthSnapshot,
    ProvisioningStatus,
    utc_now,
)

CLUSTER_KEY_PREFIX = "CLSTR-"


def cluster_key(sequence: int) -> str:
    """Display key for the n-th cluster created (1-based)."""
    return f"{CLUSTER_KEY_PREFIX}{sequence}"


def apply_changes(cluster: Cluster, changes: Mapping[str, Any]) -> Cluster:
    """Validated copy of cluster with changes applied and updated_at bumped."""
    data = cluster.model_dump()
    data.update(changes)
    data["updated_at"] = utc_now()
    return Cluster.model_validate(data)


class ControlPlaneStore(ABC):
    """Cluster metadata read/write interface."""

    async def connect(self) -> None:
        """Open the store. No-op by default."""

    async def disconnect(self) -> None:
        """Close the store. No-op by default."""

    @abstractmethod
    async def create_cluster(self, cluster: Cluster) -> Cluster:
        """Persist a new cluster and assign its display key."""

    @abstractmethod
    async def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        """Return the cluster or None."""

    @abstractmethod
    async def list_clusters(self, status: Optional[ClusterStatus] = None) -> List[Cluster]:
        """Clusters in creation order, optionally filtered by status."""

    @abstractmethod
    async def update_cluster(
        self,
        cluster_id: str,
        changes: Dict[str, Any],
        expected_status: Optional[ClusterStatus] = None,
    ) -> Optional[Cluster]:
        """
        Apply field changes atomically.

        Args:
            cluster_id: Cluster to update
            changes: Field name to new value
            expected_status: Only apply if the cluster currently has this status

        Returns:
            The updated cluster, or None if expected_status did not match

        Raises:
            ClusterNotFoundError: Unknown cluster
        """

    @abstractmethod
    async def save_provisioning_status(self, status: ProvisioningStatus) -> None:
        """Replace the cluster's last known provisioning status."""

    @abstractmethod
    async def get_provisioning_status(self, cluster_id: str) -> Optional[ProvisioningStatus]:
        """Last known provisioning status, retained after terminal states."""

    @abstractmethod
    async def save_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        """Record one health probe result."""

    @abstractmethod
    async def get_latest_health_snapshot(self, cluster_id: str) -> Optional[HealthSnapshot]:
        """Most recent health probe result."""

    async def require_cluster(self, cluster_id: str) -> Cluster:
        cluster = await self.get_cluster(cluster_id)
        if cluster is None:
            raise ClusterNotFoundError(cluster_id)
        return cluster
