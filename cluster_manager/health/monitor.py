"""
Periodic health monitor for active clusters.

Each sweep probes every active cluster concurrently. A probe that fails for
any reason marks the cluster critical; one cluster's failure never affects
the others. Results are only written while the cluster is still active, so a
sweep racing a lifecycle transition cannot overwrite it.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Set

from cluster_manager.clickhouse.client import ClickHouseClient
from cluster_manager.clickhouse.connection import ConnectionConfig, ConnectionRegistry
from cluster_manager.crypto import CredentialEncryption
from cluster_manager.errors import ClusterNotActiveError, ConnectivityError
from cluster_manager.models.cluster import (
    Cluster,
    ClusterStatus,
    HealthChecks,
    HealthSnapshot,
    HealthStatus,
)
from cluster_manager.store.base import ControlPlaneStore
from cluster_manager.telemetry.service import cluster_connection_config, collect_cluster_metrics

logger = logging.getLogger(__name__)

# Probes slower than this fail the query_performance check
SLOW_PROBE_MS = 5000.0


async def replication_healthy(client: ClickHouseClient) -> bool:
    """True unless a replicated table is read-only or has lost its session."""
    rows = await client.query(
        "SELECT countIf(is_readonly OR is_session_expired) AS broken FROM system.replicas"
    )
    return not rows or int(rows[0]["broken"] or 0) == 0


class HealthMonitor:
    """Runs health sweeps on a fixed interval."""

    def __init__(
        self,
        store: ControlPlaneStore,
        registry: ConnectionRegistry,
        encryption: Optional[CredentialEncryption] = None,
        interval_seconds: float = 60,
        probe_timeout_seconds: float = 10,
    ):
        """
        Initialize health monitor.

        Args:
            store: Control-plane store
            registry: Shared connection registry
            encryption: Decrypts the admin password for probes
            interval_seconds: Delay between sweeps
            probe_timeout_seconds: Upper bound on a single cluster probe
        """
        self.store = store
        self.registry = registry
        self.encryption = encryption
        self.interval_seconds = interval_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._sweep_count = 0
        self._last_sweep: Optional[float] = None

    # ========================================================================
    # LOOP
    # ========================================================================

    async def start(self) -> None:
        if self._running:
            logger.warning("Health monitor already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(f"Started health monitor every {self.interval_seconds}s")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped health monitor")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Health sweep error: {e}")
            await asyncio.sleep(self.interval_seconds)

    # ========================================================================
    # SWEEP
    # ========================================================================

    async def sweep(self) -> Dict[str, HealthSnapshot]:
        """
        Probe every active cluster once.

        Clusters whose previous probe is still running are skipped.

        Returns:
            Snapshot per probed cluster id
        """
        clusters = await self.store.list_clusters(ClusterStatus.ACTIVE)
        self._prune_locks({cluster.id for cluster in clusters})
        pending = []
        for cluster in clusters:
            lock = self._locks.setdefault(cluster.id, asyncio.Lock())
            if lock.locked():
                logger.debug(f"Skipping {cluster.id}: previous probe still running")
                continue
            pending.append(cluster)

        results = await asyncio.gather(
            *(self._check_locked(cluster) for cluster in pending), return_exceptions=True
        )

        snapshots: Dict[str, HealthSnapshot] = {}
        for cluster, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.error(f"Health check for {cluster.id} failed to record: {result}")
                continue
            snapshots[cluster.id] = result

        self._sweep_count += 1
        self._last_sweep = time.time()
        critical = sum(1 for s in snapshots.values() if s.status == HealthStatus.CRITICAL)
        logger.info(f"Health sweep: {len(snapshots)} clusters probed, {critical} critical")
        return snapshots

    async def check_cluster(self, cluster_id: str) -> HealthSnapshot:
        """
        Probe one cluster on demand.

        Raises:
            ClusterNotFoundError: Unknown cluster
            ClusterNotActiveError: Cluster is not active
        """
        cluster = await self.store.require_cluster(cluster_id)
        if cluster.status != ClusterStatus.ACTIVE:
            raise ClusterNotActiveError(cluster_id, cluster.status.value)
        return await self._check_locked(cluster)

    async def _check_locked(self, cluster: Cluster) -> HealthSnapshot:
        lock = self._locks.setdefault(cluster.id, asyncio.Lock())
        async with lock:
            snapshot = await self.probe_cluster(cluster)
            await self._record(snapshot)
            return snapshot

    # ========================================================================
    # PROBE
    # ========================================================================

    async def probe_cluster(self, cluster: Cluster) -> HealthSnapshot:
        """
        Run the health checks against one cluster. Never raises.

        A connectivity failure evicts the cached connection so the next
        sweep reconnects.
        """
        started = time.monotonic()
        checks = HealthChecks()
        config = None
        try:
            config = cluster_connection_config(cluster, self.encryption)
            metrics, replication_ok = await asyncio.wait_for(
                self._run_checks(config, checks),
                timeout=self.probe_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._failed(cluster, checks, f"Probe timed out after {self.probe_timeout_seconds}s")
        except ConnectivityError as e:
            if config is not None:
                await self.registry.release(*config.key)
            return self._failed(cluster, checks, str(e))
        except Exception as e:
            return self._failed(cluster, checks, str(e))

        metrics.probe_duration_ms = (time.monotonic() - started) * 1000
        checks.query_performance = metrics.probe_duration_ms < SLOW_PROBE_MS
        checks.replication_status = replication_ok
        status = HealthStatus.HEALTHY if checks.all_passed else HealthStatus.CRITICAL
        return HealthSnapshot(
            cluster_id=cluster.id,
            status=status,
            checks=checks,
            metrics=metrics,
            error=None if checks.all_passed else "One or more health checks failed",
        )

    async def _run_checks(self, config: ConnectionConfig, checks: HealthChecks):
        client = await self.registry.acquire(config)
        checks.connectivity = True
        metrics, replication_ok = await asyncio.gather(
            collect_cluster_metrics(client), replication_healthy(client)
        )
        checks.storage_health = True
        return metrics, replication_ok

    def _failed(self, cluster: Cluster, checks: HealthChecks, error: str) -> HealthSnapshot:
        logger.warning(f"Cluster {cluster.id} health check failed: {error}")
        return HealthSnapshot(
            cluster_id=cluster.id, status=HealthStatus.CRITICAL, checks=checks, error=error
        )

    async def _record(self, snapshot: HealthSnapshot) -> bool:
        """Write the result if the cluster is still active. Returns whether it was written."""
        updated = await self.store.update_cluster(
            snapshot.cluster_id,
            {"health_status": snapshot.status, "last_health_check": snapshot.timestamp},
            expected_status=ClusterStatus.ACTIVE,
        )
        if updated is None:
            logger.info(f"Dropped health result for {snapshot.cluster_id}: no longer active")
            return False
        await self.store.save_health_snapshot(snapshot)
        return True

    def forget(self, cluster_id: str) -> None:
        """Drop the probe lock of a cluster that left service, unless a probe holds it."""
        lock = self._locks.get(cluster_id)
        if lock is not None and not lock.locked():
            del self._locks[cluster_id]

    def _prune_locks(self, active_ids: Set[str]) -> None:
        for cluster_id in [c for c in self._locks if c not in active_ids]:
            self.forget(cluster_id)

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "sweeps": self._sweep_count,
            "last_sweep": self._last_sweep,
        }
