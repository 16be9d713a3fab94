"""
Tests for the telemetry data service against managed clusters.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cluster_manager.errors import (
    ClusterNotActiveError,
    ClusterNotFoundError,
    InputError,
    PartialBatchError,
)
from cluster_manager.models.cluster import ClusterCreateRequest, ClusterStatus
from cluster_manager.telemetry.schemas import Resolution, TelemetryQuery, TimeRange
from cluster_manager.telemetry.service import TelemetryDataService


@pytest.fixture
def service(store, registry, encryption):
    return TelemetryDataService(store, registry, encryption=encryption)


async def active_cluster(lifecycle):
    cluster, _ = await lifecycle.create_cluster(ClusterCreateRequest(name="plant-7"))
    await lifecycle.wait_for(cluster.id, timeout=5)
    cluster = await lifecycle.get_cluster(cluster.id)
    assert cluster.status == ClusterStatus.ACTIVE
    return cluster


class TestTelemetryService:
    """Test routing of telemetry traffic."""

    @pytest.mark.asyncio
    async def test_ingest_query_and_metrics(self, lifecycle, service, fake_engine, make_readings):
        cluster = await active_cluster(lifecycle)

        result = await service.ingest_sensor_readings(cluster.id, make_readings(25000))

        assert result.records_written == 25000
        assert result.total_chunks == 3
        assert [len(rows) for table, rows in fake_engine.inserts] == [10000, 10000, 5000]

        fake_engine.select_rows = [
            {"sensor_id": "temperature_000", "timestamp": "2024-03-01T00:00:00.000", "value": 20.0},
            {"sensor_id": "temperature_000", "timestamp": "2024-03-01T00:00:01.000", "value": 21.0},
        ]
        query = TelemetryQuery(
            sensor_ids=["temperature_000"],
            time_range=TimeRange(
                start=datetime(2024, 3, 1, tzinfo=timezone.utc),
                end=datetime(2024, 3, 1, 6, tzinfo=timezone.utc),
            ),
            max_points=1000,
        )
        series = await service.query(cluster.id, query)

        assert series.resolution == Resolution.RAW
        assert [p.value for p in series.points] == [20.0, 21.0]

        metrics = await service.cluster_metrics(cluster.id)
        assert metrics.sensor_readings_count == 25000
        assert metrics.production_events_count == 0

    @pytest.mark.asyncio
    async def test_resume_after_partial_failure(
        self, lifecycle, service, fake_engine, make_readings
    ):
        cluster = await active_cluster(lifecycle)
        readings = make_readings(25000)
        fake_engine.fail_insert_calls = {1}

        with pytest.raises(PartialBatchError) as exc_info:
            await service.ingest_sensor_readings(cluster.id, readings)
        assert exc_info.value.failed_chunk_index == 1

        result = await service.ingest_sensor_readings(
            cluster.id, readings, exc_info.value.failed_chunk_index
        )

        assert result.chunks_written == 2
        assert len(fake_engine.rows["sensor_readings"]) == 25000

    @pytest.mark.asyncio
    async def test_cluster_not_active(self, lifecycle, service, make_readings):
        cluster = await active_cluster(lifecycle)
        await lifecycle.terminate_cluster(cluster.id)

        with pytest.raises(ClusterNotActiveError):
            await service.ingest_sensor_readings(cluster.id, make_readings(10))

    @pytest.mark.asyncio
    async def test_unknown_cluster(self, service, make_readings):
        with pytest.raises(ClusterNotFoundError):
            await service.ingest_sensor_readings("missing", make_readings(10))

    @pytest.mark.asyncio
    async def test_invalid_query_rejected_before_lookup(self, service, fake_engine):
        end = datetime(2024, 3, 1, tzinfo=timezone.utc)
        query = TelemetryQuery(
            sensor_ids=[],
            time_range=TimeRange(start=end - timedelta(hours=1), end=end),
            max_points=100,
        )

        with pytest.raises(InputError):
            await service.query("missing", query)
        assert fake_engine.clients == []

    @pytest.mark.asyncio
    async def test_empty_batches_skip_connection(self, lifecycle, service, registry, fake_engine):
        cluster_id = (await active_cluster(lifecycle)).id
        await registry.release_all()
        opened = len(fake_engine.clients)

        readings = await service.ingest_sensor_readings(cluster_id, [])
        measurements = await service.ingest_quality_measurements(cluster_id, [])
        events = await service.ingest_production_events(cluster_id, [])

        assert readings.records_written == 0
        assert readings.total_chunks == 0
        assert measurements.records_written == 0
        assert events.records_written == 0
        assert len(fake_engine.clients) == opened
        assert len(registry) == 0
