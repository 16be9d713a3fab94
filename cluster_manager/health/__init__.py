"""Cluster health monitoring."""

from cluster_manager.health.monitor import HealthMonitor

__all__ = ["HealthMonitor"]
