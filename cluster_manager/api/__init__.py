"""REST API for the cluster manager."""

from cluster_manager.api.routes import create_cluster_routes

__all__ = ["create_cluster_routes"]
