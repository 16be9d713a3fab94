"""Pydantic models for the cluster control plane."""

from cluster_manager.models.cluster import (
    Cluster,
    ClusterCreateRequest,
    ClusterStatus,
    ClusterType,
    Credentials,
    HealthChecks,
    HealthMetrics,
    HealthSnapshot,
    HealthStatus,
    ProvisioningStatus,
    ScaleRequest,
    parse_size_gb,
    utc_now,
)

__all__ = [
    "Cluster",
    "ClusterCreateRequest",
    "ClusterStatus",
    "ClusterType",
    "Credentials",
    "HealthChecks",
    "HealthMetrics",
    "HealthSnapshot",
    "HealthStatus",
    "ProvisioningStatus",
    "ScaleRequest",
    "parse_size_gb",
    "utc_now",
]
