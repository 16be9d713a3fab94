"""Control-plane stores for cluster metadata, provisioning status and health."""

from cluster_manager.store.base import ControlPlaneStore
from cluster_manager.store.file_store import FileControlPlaneStore
from cluster_manager.store.postgres import PostgresControlPlaneStore

__all__ = ["ControlPlaneStore", "FileControlPlaneStore", "PostgresControlPlaneStore"]
