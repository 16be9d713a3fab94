"""
REST API routes for the cluster manager.

Provides endpoints for cluster lifecycle, health and telemetry traffic.
"""

import logging
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from cluster_manager.errors import (
    ClusterManagerError,
    ClusterNotFoundError,
    ClusterStateError,
    ConnectivityError,
    InputError,
    InvalidTransitionError,
    PartialBatchError,
)
from cluster_manager.models.cluster import ClusterCreateRequest, ClusterStatus, ScaleRequest
from cluster_manager.telemetry.schemas import (
    EventResolution,
    ProductionEvent,
    QualityMeasurement,
    SensorReading,
    TelemetryQuery,
)
from cluster_manager.utils.log_sanitizer import sanitize_cluster_id

logger = logging.getLogger(__name__)


class SensorReadingBatch(BaseModel):
    records: List[SensorReading] = Field(min_length=1)
    start_chunk: int = Field(default=0, ge=0, description="First chunk to write when resuming")


class QualityMeasurementBatch(BaseModel):
    records: List[QualityMeasurement] = Field(min_length=1)
    start_chunk: int = Field(default=0, ge=0)


class ProductionEventBatch(BaseModel):
    records: List[ProductionEvent] = Field(min_length=1)
    start_chunk: int = Field(default=0, ge=0)


def raise_http_error(e: ClusterManagerError) -> NoReturn:
    """Translate a manager error into the matching HTTP error."""
    if isinstance(e, ClusterNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ClusterStateError):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (InputError, InvalidTransitionError)):
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ConnectivityError):
        raise HTTPException(status_code=503, detail=str(e))
    if isinstance(e, PartialBatchError):
        raise HTTPException(status_code=502, detail=e.to_dict())
    logger.error(f"Unhandled cluster manager error: {e}")
    raise HTTPException(status_code=500, detail=str(e))


def create_cluster_routes(manager: Any) -> APIRouter:
    """
    Create API routes with manager instance.

    Args:
        manager: ClusterManager instance
    """
    router = APIRouter()
    lifecycle = manager.lifecycle
    telemetry = manager.telemetry
    health = manager.health

    @router.get("/health")
    async def service_health() -> Dict[str, Any]:
        return {"status": "healthy", **manager.get_status()}

    # ========================================================================
    # CLUSTERS
    # ========================================================================

    @router.post("/clusters", status_code=202)
    async def create_cluster(request: ClusterCreateRequest) -> Dict[str, Any]:
        try:
            cluster, status = await lifecycle.create_cluster(request)
        except ClusterManagerError as e:
            raise_http_error(e)
        logger.info(f"Cluster {cluster.cluster_key} ({cluster.id}) accepted for provisioning")
        return {
            "cluster": cluster.public_dict(),
            "provisioning_status": status.model_dump(mode="json"),
        }

    @router.get("/clusters")
    async def list_clusters(status: Optional[ClusterStatus] = Query(None)) -> Dict[str, Any]:
        clusters = await lifecycle.list_clusters(status)
        return {"clusters": [c.public_dict() for c in clusters], "count": len(clusters)}

    @router.get("/clusters/{cluster_id}")
    async def get_cluster(cluster_id: str) -> Dict[str, Any]:
        try:
            cluster = await lifecycle.get_cluster(cluster_id)
        except ClusterManagerError as e:
            raise_http_error(e)
        return cluster.public_dict()

    @router.get("/clusters/{cluster_id}/status")
    async def get_cluster_status(cluster_id: str) -> Dict[str, Any]:
        try:
            cluster = await lifecycle.get_cluster(cluster_id)
            provisioning = await lifecycle.get_provisioning_status(cluster_id)
        except ClusterManagerError as e:
            raise_http_error(e)
        snapshot = await manager.store.get_latest_health_snapshot(cluster_id)
        return {
            "cluster_id": cluster.id,
            "status": cluster.status.value,
            "status_message": cluster.status_message,
            "health_status": cluster.effective_health.value,
            "provisioning_status": provisioning.model_dump(mode="json") if provisioning else None,
            "last_health_snapshot": snapshot.model_dump(mode="json") if snapshot else None,
        }

    @router.post("/clusters/{cluster_id}/scale", status_code=202)
    async def scale_cluster(cluster_id: str, request: ScaleRequest) -> Dict[str, Any]:
        try:
            status = await lifecycle.scale_cluster(cluster_id, request.node_count)
        except ClusterManagerError as e:
            raise_http_error(e)
        return status.model_dump(mode="json")

    @router.delete("/clusters/{cluster_id}")
    async def terminate_cluster(cluster_id: str) -> Dict[str, Any]:
        try:
            cluster = await lifecycle.terminate_cluster(cluster_id)
        except ClusterManagerError as e:
            raise_http_error(e)
        health.forget(cluster_id)
        logger.info(f"Cluster {sanitize_cluster_id(cluster_id)} terminated via API")
        return cluster.public_dict()

    @router.post("/clusters/{cluster_id}/health-check")
    async def check_cluster_health(cluster_id: str) -> Dict[str, Any]:
        try:
            snapshot = await health.check_cluster(cluster_id)
        except ClusterManagerError as e:
            raise_http_error(e)
        return snapshot.model_dump(mode="json")

    # ========================================================================
    # TELEMETRY
    # ========================================================================

    @router.post("/clusters/{cluster_id}/telemetry/sensor-readings")
    async def ingest_sensor_readings(cluster_id: str, batch: SensorReadingBatch) -> Dict[str, Any]:
        try:
            result = await telemetry.ingest_sensor_readings(
                cluster_id, batch.records, batch.start_chunk
            )
        except ClusterManagerError as e:
            raise_http_error(e)
        return result.model_dump(mode="json")

    @router.post("/clusters/{cluster_id}/telemetry/quality-measurements")
    async def ingest_quality_measurements(
        cluster_id: str, batch: QualityMeasurementBatch
    ) -> Dict[str, Any]:
        try:
            result = await telemetry.ingest_quality_measurements(
                cluster_id, batch.records, batch.start_chunk
            )
        except ClusterManagerError as e:
            raise_http_error(e)
        return result.model_dump(mode="json")

    @router.post("/clusters/{cluster_id}/telemetry/production-events")
    async def ingest_production_events(
        cluster_id: str, batch: ProductionEventBatch
    ) -> Dict[str, Any]:
        try:
            result = await telemetry.ingest_production_events(
                cluster_id, batch.records, batch.start_chunk
            )
        except ClusterManagerError as e:
            raise_http_error(e)
        return result.model_dump(mode="json")

    @router.post("/clusters/{cluster_id}/telemetry/production-events/{event_id}/resolve")
    async def resolve_production_event(
        cluster_id: str, event_id: str, resolution: EventResolution
    ) -> Dict[str, Any]:
        try:
            await telemetry.resolve_production_event(
                cluster_id,
                event_id,
                resolution.resolved_by,
                resolution.resolution_notes,
                resolution.resolved_at,
            )
        except ClusterManagerError as e:
            raise_http_error(e)
        return {"status": "resolved", "event_id": event_id}

    @router.post("/clusters/{cluster_id}/telemetry/query")
    async def query_telemetry(cluster_id: str, query: TelemetryQuery) -> Dict[str, Any]:
        try:
            result = await telemetry.query(cluster_id, query)
        except ClusterManagerError as e:
            raise_http_error(e)
        return result.model_dump(mode="json")

    @router.get("/clusters/{cluster_id}/telemetry/metrics")
    async def cluster_metrics(cluster_id: str) -> Dict[str, Any]:
        try:
            metrics = await telemetry.cluster_metrics(cluster_id)
        except ClusterManagerError as e:
            raise_http_error(e)
        return metrics.model_dump(mode="json")

    return router
