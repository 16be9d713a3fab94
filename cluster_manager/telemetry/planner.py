"""
Resolution query planner.

Picks raw readings, the 1-minute view or the 1-hour view for a sensor
series request based on the window length and the per-sensor point budget,
then reads from that source ordered by (sensor_id, time).
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

from cluster_manager.clickhouse.client import ClickHouseClient
from cluster_manager.errors import InputError
from cluster_manager.schema.downsampling import ONE_HOUR_VIEW, ONE_MINUTE_VIEW, DownsampleView
from cluster_manager.schema.tables import SENSOR_READINGS
from cluster_manager.telemetry.schemas import (
    AggregateSensorRow,
    QueryResult,
    RawSensorRow,
    Resolution,
    SeriesPoint,
    TelemetryQuery,
)

logger = logging.getLogger(__name__)

# Minute buckets serve windows of one day up to a week, hourly buckets anything
# longer, each only while the per-sensor budget fits under its ceiling.
MINUTE_VIEW_MIN_DURATION = timedelta(days=1)
MINUTE_VIEW_MAX_POINTS = 1440
HOUR_VIEW_MIN_DURATION = timedelta(days=7)
HOUR_VIEW_MAX_POINTS = 168


def select_resolution(duration: timedelta, points_per_sensor: int) -> Resolution:
    """
    Choose the granularity for a request.

    The minute view covers windows longer than a day and at most
    HOUR_VIEW_MIN_DURATION; past that only the hourly view is considered.
    Requests over their view's point ceiling read raw rows, however long
    the window.
    """
    if (
        MINUTE_VIEW_MIN_DURATION < duration <= HOUR_VIEW_MIN_DURATION
        and points_per_sensor <= MINUTE_VIEW_MAX_POINTS
    ):
        return Resolution.ONE_MINUTE
    if duration > HOUR_VIEW_MIN_DURATION and points_per_sensor <= HOUR_VIEW_MAX_POINTS:
        return Resolution.ONE_HOUR
    return Resolution.RAW


@dataclass(frozen=True)
class QueryPlan:
    resolution: Resolution
    source: str
    sql: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    points_per_sensor: int = 0


def raw_select_statement(with_facility: bool = False) -> str:
    facility_filter = "\n  AND facility_id = {facility_id:UInt32}" if with_facility else ""
    return (
        "SELECT sensor_id, timestamp, value\n"
        f"FROM {SENSOR_READINGS}\n"
        "WHERE sensor_id IN {sensor_ids:Array(String)}\n"
        "  AND timestamp >= {start:DateTime64(3)}\n"
        "  AND timestamp <= {end:DateTime64(3)}"
        f"{facility_filter}\n"
        "ORDER BY sensor_id, timestamp\n"
        "LIMIT {max_points:UInt32}"
    )


def raw_to_point(row: RawSensorRow) -> SeriesPoint:
    return SeriesPoint(
        sensor_id=row.sensor_id,
        timestamp=row.timestamp,
        value=row.value,
        min_value=row.value,
        max_value=row.value,
    )


def aggregate_to_point(row: AggregateSensorRow) -> SeriesPoint:
    return SeriesPoint(
        sensor_id=row.sensor_id,
        timestamp=row.time_bucket,
        value=row.avg_value,
        min_value=row.min_value,
        max_value=row.max_value,
    )


class QueryPlanner:
    """Plans and runs sensor series queries."""

    def __init__(self, views: Optional[Mapping[Resolution, DownsampleView]] = None):
        self.views: Dict[Resolution, DownsampleView] = dict(
            views
            or {
                Resolution.ONE_MINUTE: ONE_MINUTE_VIEW,
                Resolution.ONE_HOUR: ONE_HOUR_VIEW,
            }
        )

    def validate(self, query: TelemetryQuery) -> List[str]:
        """
        Check request bounds.

        Returns:
            Distinct sensor ids in request order

        Raises:
            InputError: Empty sensor set, budget below 1, or end before start
        """
        sensor_ids = list(dict.fromkeys(s for s in query.sensor_ids if s))
        if not sensor_ids:
            raise InputError("At least one sensor id is required")
        if query.max_points < 1:
            raise InputError("max_points must be at least 1")
        if query.time_range.end < query.time_range.start:
            raise InputError("time_range.end is before time_range.start")
        return sensor_ids

    def plan(self, query: TelemetryQuery) -> QueryPlan:
        """Build the statement for a request without touching the cluster."""
        sensor_ids = self.validate(query)
        duration = query.time_range.end - query.time_range.start
        points_per_sensor = query.max_points // len(sensor_ids)
        resolution = select_resolution(duration, points_per_sensor)

        with_facility = query.facility_id is not None
        if resolution == Resolution.RAW:
            source = SENSOR_READINGS
            sql = raw_select_statement(with_facility)
        else:
            view = self.views[resolution]
            source = view.name
            sql = view.select_statement(with_facility)

        parameters: Dict[str, Any] = {
            "sensor_ids": sensor_ids,
            "start": query.time_range.start,
            "end": query.time_range.end,
            "max_points": query.max_points,
        }
        if with_facility:
            parameters["facility_id"] = query.facility_id

        logger.debug(
            f"Planned {resolution.value} read from {source}: {len(sensor_ids)} sensors, "
            f"{duration}, {points_per_sensor} points/sensor"
        )
        return QueryPlan(
            resolution=resolution,
            source=source,
            sql=sql,
            parameters=parameters,
            points_per_sensor=points_per_sensor,
        )

    async def execute(self, client: ClickHouseClient, query: TelemetryQuery) -> QueryResult:
        """Plan and run a request, adapting engine rows to series points."""
        plan = self.plan(query)
        points: List[SeriesPoint] = []
        async for row in client.iter_rows(plan.sql, plan.parameters):
            if plan.resolution == Resolution.RAW:
                points.append(raw_to_point(RawSensorRow.model_validate(row)))
            else:
                points.append(aggregate_to_point(AggregateSensorRow.model_validate(row)))
        return QueryResult(resolution=plan.resolution, source=plan.source, points=points)
