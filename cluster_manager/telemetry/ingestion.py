"""
Chunked telemetry ingestion.

Records are normalized (no nulls in non-nullable columns) and written in
fixed-size chunks, one insert per chunk, strictly in order. A failed chunk
stops the batch; earlier chunks stay committed and the caller can resume
from the failed chunk index.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from cluster_manager.clickhouse.client import ClickHouseClient, format_datetime
from cluster_manager.errors import InputError, PartialBatchError
from cluster_manager.schema.tables import PRODUCTION_EVENTS, QUALITY_MEASUREMENTS, SENSOR_READINGS
from cluster_manager.telemetry.schemas import (
    IngestionResult,
    ProductionEvent,
    QualityMeasurement,
    SensorReading,
)
from cluster_manager.utils.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10000

T = TypeVar("T")


def sensor_reading_row(reading: SensorReading) -> Dict[str, Any]:
    return {
        "facility_id": reading.facility_id,
        "production_line": reading.production_line,
        "sensor_id": reading.sensor_id,
        "sensor_type": reading.sensor_type.value,
        "timestamp": format_datetime(reading.timestamp),
        "value": reading.value,
        "unit": reading.unit,
        "quality_score": reading.quality_score,
        "status": reading.status.value,
        "batch_id": reading.batch_id or "",
        "operator_id": reading.operator_id or "",
        "shift_id": reading.shift_id or "",
        "recipe_id": reading.recipe_id or "",
        "product_type": reading.product_type or "",
        "ambient_temperature": reading.ambient_temperature or 0.0,
        "ambient_humidity": reading.ambient_humidity or 0.0,
    }


def quality_measurement_row(measurement: QualityMeasurement) -> Dict[str, Any]:
    return {
        "measurement_id": measurement.measurement_id,
        "facility_id": measurement.facility_id,
        "production_line": measurement.production_line,
        "batch_id": measurement.batch_id,
        "product_id": measurement.product_id or "",
        "timestamp": format_datetime(measurement.timestamp),
        "measurement_type": measurement.measurement_type,
        "measured_value": measurement.measured_value,
        "target_value": measurement.target_value,
        "tolerance_upper": measurement.tolerance_upper,
        "tolerance_lower": measurement.tolerance_lower,
        "pass_fail": measurement.pass_fail.value,
        "inspector_id": measurement.inspector_id or "",
        "equipment_id": measurement.equipment_id or "",
        "test_method": measurement.test_method or "",
        "environmental_conditions": dict(measurement.environmental_conditions),
        "raw_material_lot": measurement.raw_material_lot or "",
        "supplier_id": measurement.supplier_id or "",
        "process_parameters": dict(measurement.process_parameters),
    }


def production_event_row(event: ProductionEvent) -> Dict[str, Any]:
    return {
        "event_id": event.event_id,
        "facility_id": event.facility_id,
        "production_line": event.production_line,
        "timestamp": format_datetime(event.timestamp),
        "event_type": event.event_type.value,
        "event_category": event.event_category,
        "severity": event.severity.value,
        "description": event.description,
        "operator_id": event.operator_id or "",
        "shift_id": event.shift_id or "",
        "equipment_id": event.equipment_id or "",
        "duration_seconds": event.duration_seconds,
        "batch_id": event.batch_id or "",
        "order_id": event.order_id or "",
        "recipe_id": event.recipe_id or "",
        "resolved_at": format_datetime(event.resolved_at) if event.resolved_at else None,
        "resolved_by": event.resolved_by or "",
        "resolution_notes": event.resolution_notes or "",
    }


def chunk_bounds(total: int, chunk_size: int) -> List[range]:
    """Index ranges of each chunk, in order."""
    return [range(i, min(i + chunk_size, total)) for i in range(0, total, chunk_size)]


class IngestionPipeline:
    """Writes telemetry batches to one cluster."""

    def __init__(self, client: ClickHouseClient, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.client = client
        self.chunk_size = chunk_size

    async def ingest_sensor_readings(
        self, readings: Sequence[SensorReading], start_chunk: int = 0
    ) -> IngestionResult:
        """
        Write sensor readings in chunks.

        Args:
            readings: Ordered readings; an empty batch is a no-op
            start_chunk: First chunk to write, for resuming a partial batch

        Raises:
            PartialBatchError: A chunk failed; earlier chunks are committed
        """
        return await self._ingest(SENSOR_READINGS, readings, sensor_reading_row, start_chunk)

    async def ingest_quality_measurements(
        self, measurements: Sequence[QualityMeasurement], start_chunk: int = 0
    ) -> IngestionResult:
        return await self._ingest(
            QUALITY_MEASUREMENTS, measurements, quality_measurement_row, start_chunk
        )

    async def ingest_production_events(
        self, events: Sequence[ProductionEvent], start_chunk: int = 0
    ) -> IngestionResult:
        return await self._ingest(PRODUCTION_EVENTS, events, production_event_row, start_chunk)

    async def _ingest(
        self,
        table: str,
        records: Sequence[T],
        to_row: Callable[[T], Dict[str, Any]],
        start_chunk: int,
    ) -> IngestionResult:
        if not records:
            return IngestionResult(table=table)

        chunks = chunk_bounds(len(records), self.chunk_size)
        if not 0 <= start_chunk < len(chunks):
            raise InputError(f"start_chunk {start_chunk} outside 0..{len(chunks) - 1}")

        started = time.monotonic()
        written = 0
        for index in range(start_chunk, len(chunks)):
            bounds = chunks[index]
            rows = [to_row(records[i]) for i in bounds]
            try:
                await self.client.insert(table, rows)
            except Exception as e:
                logger.error(
                    f"Insert into {table} failed at chunk {index + 1}/{len(chunks)} "
                    f"({len(rows)} records): {e}"
                )
                raise PartialBatchError(
                    failed_chunk_index=index,
                    records_in_chunk=len(rows),
                    chunks_committed=index,
                    total_chunks=len(chunks),
                    cause=e,
                ) from e
            written += len(rows)
            logger.debug(f"{table}: chunk {index + 1}/{len(chunks)} committed ({len(rows)} rows)")

        result = IngestionResult(
            table=table,
            records_written=written,
            chunks_written=len(chunks) - start_chunk,
            total_chunks=len(chunks),
            start_chunk=start_chunk,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        logger.info(
            f"Ingested {written} records into {table} in {result.chunks_written} chunks "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    async def resolve_production_event(
        self,
        event_id: str,
        resolved_by: str,
        resolution_notes: str = "",
        resolved_at: Optional[datetime] = None,
    ) -> None:
        """Record the resolution of an event. No other column is touched."""
        if not event_id or not resolved_by:
            raise InputError("event_id and resolved_by are required")
        await self.client.command(
            f"ALTER TABLE {PRODUCTION_EVENTS} UPDATE "
            "resolved_at = {resolved_at:DateTime64(3)}, "
            "resolved_by = {resolved_by:String}, "
            "resolution_notes = {resolution_notes:String} "
            "WHERE event_id = {event_id:String}",
            {
                "resolved_at": resolved_at or datetime.now(timezone.utc),
                "resolved_by": resolved_by,
                "resolution_notes": resolution_notes,
                "event_id": event_id,
            },
        )
        logger.info(
            f"Production event {sanitize_for_log(event_id)} resolved by {sanitize_for_log(resolved_by)}"
        )
