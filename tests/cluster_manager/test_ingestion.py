"""
Tests for chunked telemetry ingestion.
"""

from datetime import datetime, timezone

import pytest

from cluster_manager.errors import InputError, PartialBatchError
from cluster_manager.schema.tables import PRODUCTION_EVENTS, QUALITY_MEASUREMENTS, SENSOR_READINGS
from cluster_manager.telemetry.ingestion import (
    DEFAULT_CHUNK_SIZE,
    IngestionPipeline,
    chunk_bounds,
    production_event_row,
    sensor_reading_row,
)
from cluster_manager.telemetry.schemas import (
    EventType,
    ProductionEvent,
    QualityMeasurement,
    QualityVerdict,
)

TS = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_chunk_bounds():
    chunks = chunk_bounds(25000, 10000)
    assert [len(c) for c in chunks] == [10000, 10000, 5000]
    assert chunks[2][0] == 20000
    assert chunk_bounds(0, 10000) == []


class TestIngestionPipeline:
    """Test chunking, ordering and partial failure."""

    @pytest.mark.asyncio
    async def test_batch_written_in_ordered_chunks(self, fake_client, fake_engine, make_readings):
        readings = make_readings(25000)
        pipeline = IngestionPipeline(fake_client)

        result = await pipeline.ingest_sensor_readings(readings)

        assert pipeline.chunk_size == DEFAULT_CHUNK_SIZE
        assert [len(rows) for _, rows in fake_engine.inserts] == [10000, 10000, 5000]
        assert all(table == SENSOR_READINGS for table, _ in fake_engine.inserts)
        written = [row["timestamp"] for _, rows in fake_engine.inserts for row in rows]
        assert written == sorted(written)
        assert result.records_written == 25000
        assert result.chunks_written == 3
        assert result.total_chunks == 3

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, fake_client, fake_engine):
        result = await IngestionPipeline(fake_client).ingest_sensor_readings([])
        assert result.records_written == 0
        assert fake_engine.inserts == []

    @pytest.mark.asyncio
    async def test_failed_chunk_reports_position(self, fake_client, fake_engine, make_readings):
        fake_engine.fail_insert_calls = {1}
        pipeline = IngestionPipeline(fake_client, chunk_size=1000)

        with pytest.raises(PartialBatchError) as exc_info:
            await pipeline.ingest_sensor_readings(make_readings(2500))

        error = exc_info.value
        assert error.failed_chunk_index == 1
        assert error.records_in_chunk == 1000
        assert error.chunks_committed == 1
        assert error.total_chunks == 3
        assert len(fake_engine.inserts) == 1
        assert error.to_dict()["failed_chunk_index"] == 1

    @pytest.mark.asyncio
    async def test_resume_from_failed_chunk(self, fake_client, fake_engine, make_readings):
        readings = make_readings(2500)
        pipeline = IngestionPipeline(fake_client, chunk_size=1000)
        fake_engine.fail_insert_calls = {1}
        with pytest.raises(PartialBatchError) as exc_info:
            await pipeline.ingest_sensor_readings(readings)

        result = await pipeline.ingest_sensor_readings(
            readings, start_chunk=exc_info.value.failed_chunk_index
        )

        assert result.start_chunk == 1
        assert result.records_written == 1500
        assert len(fake_engine.rows[SENSOR_READINGS]) == 2500

    @pytest.mark.asyncio
    async def test_start_chunk_out_of_range(self, fake_client, make_readings):
        with pytest.raises(InputError):
            await IngestionPipeline(fake_client).ingest_sensor_readings(
                make_readings(10), start_chunk=1
            )

    def test_invalid_chunk_size(self, fake_client):
        with pytest.raises(ValueError):
            IngestionPipeline(fake_client, chunk_size=0)

    @pytest.mark.asyncio
    async def test_quality_and_event_tables(self, fake_client, fake_engine):
        pipeline = IngestionPipeline(fake_client)
        measurement = QualityMeasurement(
            measurement_id="m-1",
            facility_id=7,
            production_line="Line-A",
            batch_id="B-1",
            timestamp=TS,
            measurement_type="diameter",
            measured_value=10.02,
            target_value=10.0,
            tolerance_upper=10.05,
            tolerance_lower=9.95,
            pass_fail=QualityVerdict.PASS,
        )
        event = ProductionEvent(
            event_id="e-1",
            facility_id=7,
            production_line="Line-A",
            timestamp=TS,
            event_type=EventType.ALARM,
        )

        await pipeline.ingest_quality_measurements([measurement])
        await pipeline.ingest_production_events([event])

        assert [table for table, _ in fake_engine.inserts] == [QUALITY_MEASUREMENTS, PRODUCTION_EVENTS]

    @pytest.mark.asyncio
    async def test_resolve_event_updates_resolution_columns(self, fake_client, fake_engine):
        await IngestionPipeline(fake_client).resolve_production_event(
            "e-1", "op-3", "Replaced belt", resolved_at=TS
        )

        sql, params = fake_engine.commands[-1]
        assert sql.startswith("ALTER TABLE production_events UPDATE")
        assert params["event_id"] == "e-1"
        assert params["resolved_by"] == "op-3"
        assert params["resolved_at"] == TS

    @pytest.mark.asyncio
    async def test_resolve_requires_event_and_resolver(self, fake_client):
        with pytest.raises(InputError):
            await IngestionPipeline(fake_client).resolve_production_event("", "op-3")


class TestRowNormalization:
    """Test that optional fields never produce nulls in non-nullable columns."""

    def test_sensor_reading_defaults(self, make_readings):
        row = sensor_reading_row(make_readings(1)[0])
        assert row["batch_id"] == ""
        assert row["ambient_temperature"] == 0.0
        assert row["timestamp"] == "2024-03-01 00:00:00.000"
        assert row["sensor_type"] == "temperature"

    def test_unresolved_event_keeps_null_resolved_at(self):
        event = ProductionEvent(
            event_id="e-1",
            facility_id=1,
            production_line="Line-B",
            timestamp=TS,
            event_type=EventType.STOP,
        )
        row = production_event_row(event)
        assert row["resolved_at"] is None
        assert row["resolved_by"] == ""
        assert row["event_type"] == "STOP"
