"""
Downsampling views over sensor_readings.

Each view is a materialized view on AggregatingMergeTree: every insert into
sensor_readings is folded into per-bucket aggregate states as it lands, and
background merges combine states for the same bucket. Readers finalize the
states with -Merge combinators (see DownsampleView.select_statement).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel

from cluster_manager.clickhouse.client import ClickHouseClient
from cluster_manager.schema.tables import SENSOR_READINGS, create_object
from cluster_manager.telemetry.schemas import Resolution

logger = logging.getLogger(__name__)

GROUP_KEY = ("facility_id", "production_line", "sensor_id", "time_bucket")


@dataclass(frozen=True)
class DownsampleView:
    """One bucketed aggregation of raw sensor readings."""

    name: str
    resolution: Resolution
    bucket_function: str
    quantile_levels: Tuple[float, ...]
    source_table: str = SENSOR_READINGS

    @property
    def _levels(self) -> str:
        return ", ".join(str(level) for level in self.quantile_levels)

    def _aggregate_select(self) -> str:
        return (
            "SELECT\n"
            "    facility_id,\n"
            "    production_line,\n"
            "    sensor_id,\n"
            f"    {self.bucket_function}(timestamp) AS time_bucket,\n"
            "    countState() AS point_count,\n"
            "    avgState(value) AS avg_value,\n"
            "    minState(value) AS min_value,\n"
            "    maxState(value) AS max_value,\n"
            "    stddevPopState(value) AS std_dev,\n"
            f"    quantilesState({self._levels})(value) AS quantiles\n"
            f"FROM {self.source_table}"
        )

    def create_statement(self, storage_policy: Optional[str] = None) -> str:
        lines = [
            f"CREATE MATERIALIZED VIEW IF NOT EXISTS {self.name}",
            "ENGINE = AggregatingMergeTree()",
            "PARTITION BY (facility_id, toYYYYMM(time_bucket))",
            f"ORDER BY ({', '.join(GROUP_KEY)})",
        ]
        if storage_policy:
            lines.append(f"SETTINGS storage_policy = '{storage_policy}'")
        lines.append("AS " + self._aggregate_select())
        lines.append(f"GROUP BY {', '.join(GROUP_KEY)}")
        return "\n".join(lines)

    def backfill_statement(self) -> str:
        """INSERT ... SELECT folding a raw window into the view."""
        return (
            f"INSERT INTO {self.name}\n"
            f"{self._aggregate_select()}\n"
            "WHERE timestamp >= {start:DateTime64(3)} AND timestamp < {end:DateTime64(3)}\n"
            f"GROUP BY {', '.join(GROUP_KEY)}"
        )

    def select_statement(self, with_facility: bool = False) -> str:
        """
        Finalized read of the view.

        Parameters: sensor_ids, start, end, max_points and, when
        with_facility is set, facility_id. Rows come back ordered by
        (sensor_id, time_bucket).
        """
        facility_filter = "\n  AND facility_id = {facility_id:UInt32}" if with_facility else ""
        return (
            "SELECT\n"
            "    sensor_id,\n"
            "    time_bucket,\n"
            "    countMerge(point_count) AS count,\n"
            "    avgMerge(avg_value) AS avg_value,\n"
            "    minMerge(min_value) AS min_value,\n"
            "    maxMerge(max_value) AS max_value,\n"
            "    stddevPopMerge(std_dev) AS stddev_value,\n"
            f"    quantilesMerge({self._levels})(quantiles) AS quantiles\n"
            f"FROM {self.name}\n"
            "WHERE sensor_id IN {sensor_ids:Array(String)}\n"
            f"  AND time_bucket >= {self.bucket_function}({{start:DateTime64(3)}})\n"
            "  AND time_bucket <= {end:DateTime64(3)}"
            f"{facility_filter}\n"
            "GROUP BY sensor_id, time_bucket\n"
            "ORDER BY sensor_id, time_bucket\n"
            "LIMIT {max_points:UInt32}"
        )


ONE_MINUTE_VIEW = DownsampleView(
    name="sensor_data_1min_mv",
    resolution=Resolution.ONE_MINUTE,
    bucket_function="toStartOfMinute",
    quantile_levels=(0.25, 0.5, 0.75),
)

ONE_HOUR_VIEW = DownsampleView(
    name="sensor_data_1hour_mv",
    resolution=Resolution.ONE_HOUR,
    bucket_function="toStartOfHour",
    quantile_levels=(0.1, 0.25, 0.5, 0.75, 0.9),
)

VIEWS: Dict[str, DownsampleView] = {v.name: v for v in (ONE_MINUTE_VIEW, ONE_HOUR_VIEW)}


class ConsistencyReport(BaseModel):
    view: str
    start: datetime
    end: datetime
    raw_count: int
    view_count: int

    @property
    def consistent(self) -> bool:
        return self.raw_count == self.view_count


class DownsamplingMaintainer:
    """Creates the downsampling views and keeps historical windows folded in."""

    def __init__(self, views: Tuple[DownsampleView, ...] = (ONE_MINUTE_VIEW, ONE_HOUR_VIEW)):
        self.views = views

    def get_view(self, name: str) -> DownsampleView:
        for view in self.views:
            if view.name == name:
                return view
        raise KeyError(f"Unknown downsampling view: {name}")

    async def materialize(
        self, client: ClickHouseClient, storage_policy: Optional[str] = None
    ) -> List[str]:
        """
        Create every view. Existing views are left untouched.

        Returns:
            Names of views created by this call
        """
        created = []
        for view in self.views:
            if await create_object(client, view.name, view.create_statement(storage_policy)):
                created.append(view.name)
        return created

    async def backfill(
        self, client: ClickHouseClient, view_name: str, start: datetime, end: datetime
    ) -> None:
        """
        Fold raw rows in [start, end) into a view.

        Only needed for rows written before the view existed; running it over
        a window the view already covers double counts that window.
        """
        view = self.get_view(view_name)
        await client.command(view.backfill_statement(), {"start": start, "end": end})
        logger.info(f"Backfilled {view.name} for {start.isoformat()} .. {end.isoformat()}")

    async def check_consistency(
        self, client: ClickHouseClient, view_name: str, start: datetime, end: datetime
    ) -> ConsistencyReport:
        """Compare raw row count with the view's merged count for [start, end)."""
        view = self.get_view(view_name)
        params = {"start": start, "end": end}
        raw_rows, view_rows = (
            await client.query(
                f"SELECT count() AS c FROM {view.source_table} "
                "WHERE timestamp >= {start:DateTime64(3)} AND timestamp < {end:DateTime64(3)}",
                params,
            ),
            await client.query(
                f"SELECT countMerge(point_count) AS c FROM {view.name} "
                "WHERE time_bucket >= {start:DateTime64(3)} AND time_bucket < {end:DateTime64(3)}",
                params,
            ),
        )
        report = ConsistencyReport(
            view=view.name,
            start=start,
            end=end,
            raw_count=int(raw_rows[0]["c"]) if raw_rows else 0,
            view_count=int(view_rows[0]["c"]) if view_rows else 0,
        )
        if not report.consistent:
            logger.warning(
                f"{view.name} out of step with {view.source_table}: "
                f"raw={report.raw_count} view={report.view_count}"
            )
        return report
