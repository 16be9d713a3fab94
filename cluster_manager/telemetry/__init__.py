"""
Telemetry data path.

Ingestion, resolution-aware queries and the active-cluster gate in front of
them. Only the schemas are re-exported here; import the pipeline, planner
and service from their modules.
"""

from cluster_manager.telemetry.schemas import (
    IngestionResult,
    ProductionEvent,
    QualityMeasurement,
    QueryResult,
    Resolution,
    SensorReading,
    SeriesPoint,
    TelemetryQuery,
    TimeRange,
)

__all__ = [
    "IngestionResult",
    "ProductionEvent",
    "QualityMeasurement",
    "QueryResult",
    "Resolution",
    "SensorReading",
    "SeriesPoint",
    "TelemetryQuery",
    "TimeRange",
]
