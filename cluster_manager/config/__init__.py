"""Configuration models."""

from cluster_manager.config.settings import ClusterManagerConfig

__all__ = ["ClusterManagerConfig"]
