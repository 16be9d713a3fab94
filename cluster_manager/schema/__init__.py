"""Telemetry schema: tables, tier rules and downsampling views."""

from cluster_manager.schema.downsampling import (
    ONE_HOUR_VIEW,
    ONE_MINUTE_VIEW,
    DownsampleView,
    DownsamplingMaintainer,
)
from cluster_manager.schema.registry import SchemaRegistry
from cluster_manager.schema.tables import (
    PRODUCTION_EVENTS,
    QUALITY_MEASUREMENTS,
    SENSOR_READINGS,
    TABLES,
    TableSpec,
    Tier,
    tier_for_age,
    tier_for_timestamp,
)

__all__ = [
    "DownsampleView",
    "DownsamplingMaintainer",
    "ONE_HOUR_VIEW",
    "ONE_MINUTE_VIEW",
    "PRODUCTION_EVENTS",
    "QUALITY_MEASUREMENTS",
    "SENSOR_READINGS",
    "SchemaRegistry",
    "TABLES",
    "TableSpec",
    "Tier",
    "tier_for_age",
    "tier_for_timestamp",
]
