"""
Telemetry data service.

Single entry point for ingestion and query traffic. Resolves the cluster from
the control-plane store, refuses clusters that are not active, and runs the
request on the cluster's shared connection.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional, Sequence

from cluster_manager.clickhouse.client import ClickHouseClient
from cluster_manager.clickhouse.connection import (
    ConnectionConfig,
    ConnectionRegistry,
    config_for_cluster,
)
from cluster_manager.crypto import CredentialEncryption
from cluster_manager.errors import ClusterNotActiveError, ConnectivityError
from cluster_manager.models.cluster import Cluster, ClusterStatus, HealthMetrics
from cluster_manager.schema.tables import PRODUCTION_EVENTS, QUALITY_MEASUREMENTS, SENSOR_READINGS
from cluster_manager.store.base import ControlPlaneStore
from cluster_manager.telemetry.ingestion import DEFAULT_CHUNK_SIZE, IngestionPipeline
from cluster_manager.telemetry.planner import QueryPlanner
from cluster_manager.telemetry.schemas import (
    IngestionResult,
    ProductionEvent,
    QualityMeasurement,
    QueryResult,
    SensorReading,
    TelemetryQuery,
)
from cluster_manager.utils.log_sanitizer import sanitize_cluster_id

logger = logging.getLogger(__name__)

TELEMETRY_TABLES = (SENSOR_READINGS, QUALITY_MEASUREMENTS, PRODUCTION_EVENTS)


def cluster_connection_config(
    cluster: Cluster, encryption: Optional[CredentialEncryption] = None
) -> ConnectionConfig:
    """
    Connection config for a cluster using its admin principal.

    Raises:
        ConnectivityError: Cluster has no connection string yet
    """
    if not cluster.connection_string:
        raise ConnectivityError(f"Cluster {cluster.id} has no connection string")
    password = ""
    if cluster.admin_password_encrypted and encryption is not None:
        password = encryption.decrypt(cluster.admin_password_encrypted)
    return config_for_cluster(cluster.connection_string, cluster.admin_username, password)


async def count_rows(client: ClickHouseClient, table: str) -> int:
    rows = await client.query(f"SELECT count() AS c FROM {table}")
    return int(rows[0]["c"]) if rows else 0


async def bytes_on_disk(client: ClickHouseClient) -> int:
    rows = await client.query(
        "SELECT sum(bytes_on_disk) AS bytes FROM system.parts "
        "WHERE active AND database = currentDatabase()"
    )
    return int(rows[0]["bytes"] or 0) if rows else 0


async def collect_cluster_metrics(client: ClickHouseClient) -> HealthMetrics:
    """Row counts per telemetry table and total bytes on disk, queried concurrently."""
    sensor, quality, events, size = await asyncio.gather(
        *(count_rows(client, table) for table in TELEMETRY_TABLES),
        bytes_on_disk(client),
    )
    return HealthMetrics(
        sensor_readings_count=sensor,
        quality_measurements_count=quality,
        production_events_count=events,
        total_bytes_on_disk=size,
    )


class TelemetryDataService:
    """Routes telemetry traffic to active clusters."""

    def __init__(
        self,
        store: ControlPlaneStore,
        registry: ConnectionRegistry,
        encryption: Optional[CredentialEncryption] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        planner: Optional[QueryPlanner] = None,
    ):
        self.store = store
        self.registry = registry
        self.encryption = encryption
        self.chunk_size = chunk_size
        self.planner = planner or QueryPlanner()

    async def _active_cluster(self, cluster_id: str) -> Cluster:
        cluster = await self.store.require_cluster(cluster_id)
        if cluster.status != ClusterStatus.ACTIVE:
            raise ClusterNotActiveError(cluster_id, cluster.status.value)
        return cluster

    async def client_for(self, cluster_id: str) -> ClickHouseClient:
        """
        Shared client for an active cluster.

        Raises:
            ClusterNotFoundError: Unknown cluster
            ClusterNotActiveError: Cluster status is not active
            ConnectivityError: Cluster unreachable
        """
        cluster = await self._active_cluster(cluster_id)
        return await self.registry.acquire(cluster_connection_config(cluster, self.encryption))

    async def _pipeline(self, cluster_id: str) -> IngestionPipeline:
        return IngestionPipeline(await self.client_for(cluster_id), self.chunk_size)

    async def ingest_sensor_readings(
        self, cluster_id: str, readings: Sequence[SensorReading], start_chunk: int = 0
    ) -> IngestionResult:
        if not readings:
            return IngestionResult(table=SENSOR_READINGS)
        pipeline = await self._pipeline(cluster_id)
        logger.info(
            f"Ingesting {len(readings)} sensor readings into {sanitize_cluster_id(cluster_id)}"
        )
        return await pipeline.ingest_sensor_readings(readings, start_chunk)

    async def ingest_quality_measurements(
        self, cluster_id: str, measurements: Sequence[QualityMeasurement], start_chunk: int = 0
    ) -> IngestionResult:
        if not measurements:
            return IngestionResult(table=QUALITY_MEASUREMENTS)
        pipeline = await self._pipeline(cluster_id)
        return await pipeline.ingest_quality_measurements(measurements, start_chunk)

    async def ingest_production_events(
        self, cluster_id: str, events: Sequence[ProductionEvent], start_chunk: int = 0
    ) -> IngestionResult:
        if not events:
            return IngestionResult(table=PRODUCTION_EVENTS)
        pipeline = await self._pipeline(cluster_id)
        return await pipeline.ingest_production_events(events, start_chunk)

    async def resolve_production_event(
        self,
        cluster_id: str,
        event_id: str,
        resolved_by: str,
        resolution_notes: str = "",
        resolved_at: Optional[datetime] = None,
    ) -> None:
        pipeline = await self._pipeline(cluster_id)
        await pipeline.resolve_production_event(event_id, resolved_by, resolution_notes, resolved_at)

    async def query(self, cluster_id: str, query: TelemetryQuery) -> QueryResult:
        """Run a sensor series query; malformed requests fail before any I/O."""
        self.planner.validate(query)
        client = await self.client_for(cluster_id)
        return await self.planner.execute(client, query)

    async def cluster_metrics(self, cluster_id: str) -> HealthMetrics:
        client = await self.client_for(cluster_id)
        return await collect_cluster_metrics(client)
