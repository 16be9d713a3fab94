"""
JSON file control-plane store.

Single-process store for development and tests. The whole state lives in
one JSON file rewritten atomically (temp file + rename) after each change.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles  # type: ignore

from cluster_manager.errors import ClusterNotFoundError
from cluster_manager.models.cluster import (
    Cluster,
    ClusterStatus,
    HealthSnapshot,
    ProvisioningStatus,
)
from cluster_manager.store.base import ControlPlaneStore, apply_changes, cluster_key

logger = logging.getLogger(__name__)


class FileControlPlaneStore(ControlPlaneStore):
    """Control-plane store backed by a JSON file."""

    def __init__(self, path: Union[str, Path], health_history: int = 100):
        """
        Initialize store.

        Args:
            path: JSON state file
            health_history: Snapshots retained per cluster
        """
        self.path = Path(path)
        self.health_history = health_history
        self._lock = asyncio.Lock()
        self._clusters: Dict[str, Cluster] = {}
        self._provisioning: Dict[str, ProvisioningStatus] = {}
        self._health: Dict[str, List[HealthSnapshot]] = {}
        self._sequence = 0
        self._loaded = False

    async def connect(self) -> None:
        async with self._lock:
            await self._load()

    async def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.path.exists():
            logger.info(f"No control-plane state at {self.path}, starting fresh")
            return

        async with aiofiles.open(self.path, "r") as f:
            data = json.loads(await f.read())

        self._sequence = data.get("sequence", 0)
        self._clusters = {
            c["id"]: Cluster.model_validate(c) for c in data.get("clusters", [])
        }
        self._provisioning = {
            cid: ProvisioningStatus.model_validate(p)
            for cid, p in data.get("provisioning", {}).items()
        }
        self._health = {
            cid: [HealthSnapshot.model_validate(s) for s in snapshots]
            for cid, snapshots in data.get("health", {}).items()
        }
        logger.info(f"Loaded {len(self._clusters)} clusters from {self.path}")

    async def _save(self) -> None:
        data = {
            "sequence": self._sequence,
            "clusters": [c.model_dump(mode="json") for c in self._clusters.values()],
            "provisioning": {
                cid: p.model_dump(mode="json") for cid, p in self._provisioning.items()
            },
            "health": {
                cid: [s.model_dump(mode="json") for s in snapshots]
                for cid, snapshots in self._health.items()
            },
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Write atomically using temp file
            temp_file = self.path.with_suffix(".tmp")
            async with aiofiles.open(temp_file, "w") as f:
                await f.write(json.dumps(data, indent=2))
            temp_file.replace(self.path)
        except Exception as e:
            logger.error(f"Failed to save control-plane state: {e}")
            raise

    async def create_cluster(self, cluster: Cluster) -> Cluster:
        async with self._lock:
            await self._load()
            if cluster.id in self._clusters:
                raise ValueError(f"Cluster {cluster.id} already exists")
            self._sequence += 1
            cluster = cluster.model_copy(update={"cluster_key": cluster_key(self._sequence)})
            self._clusters[cluster.id] = cluster
            await self._save()
            return cluster

    async def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        async with self._lock:
            await self._load()
            return self._clusters.get(cluster_id)

    async def list_clusters(self, status: Optional[ClusterStatus] = None) -> List[Cluster]:
        async with self._lock:
            await self._load()
            clusters = list(self._clusters.values())
        if status is not None:
            clusters = [c for c in clusters if c.status == status]
        return clusters

    async def update_cluster(
        self,
        cluster_id: str,
        changes: Dict[str, Any],
        expected_status: Optional[ClusterStatus] = None,
    ) -> Optional[Cluster]:
        async with self._lock:
            await self._load()
            current = self._clusters.get(cluster_id)
            if current is None:
                raise ClusterNotFoundError(cluster_id)
            if expected_status is not None and current.status != expected_status:
                return None
            updated = apply_changes(current, changes)
            self._clusters[cluster_id] = updated
            await self._save()
            return updated

    async def save_provisioning_status(self, status: ProvisioningStatus) -> None:
        async with self._lock:
            await self._load()
            self._provisioning[status.cluster_id] = status
            await self._save()

    async def get_provisioning_status(self, cluster_id: str) -> Optional[ProvisioningStatus]:
        async with self._lock:
            await self._load()
            return self._provisioning.get(cluster_id)

    async def save_health_snapshot(self, snapshot: HealthSnapshot) -> None:
        async with self._lock:
            await self._load()
            history = self._health.setdefault(snapshot.cluster_id, [])
            history.append(snapshot)
            del history[: -self.health_history]
            await self._save()

    async def get_latest_health_snapshot(self, cluster_id: str) -> Optional[HealthSnapshot]:
        async with self._lock:
            await self._load()
            history = self._health.get(cluster_id)
            return history[-1] if history else None
