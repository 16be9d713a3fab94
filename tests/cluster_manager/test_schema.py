"""
Tests for table declarations, tiering and schema materialization.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cluster_manager.errors import ClickHouseError, ConnectivityError, SchemaError
from cluster_manager.schema.downsampling import (
    ONE_HOUR_VIEW,
    ONE_MINUTE_VIEW,
    DownsamplingMaintainer,
)
from cluster_manager.schema.registry import SchemaRegistry
from cluster_manager.schema.tables import (
    PRODUCTION_EVENTS,
    QUALITY_MEASUREMENTS,
    SENSOR_READINGS,
    TABLES,
    Tier,
    get_table,
    tier_for_age,
    tier_for_timestamp,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


class TestTableDeclarations:
    """Test rendered DDL."""

    def test_sensor_readings_layout(self):
        ddl = TABLES[SENSOR_READINGS].create_statement()
        assert ddl.startswith("CREATE TABLE IF NOT EXISTS sensor_readings")
        assert "PARTITION BY (facility_id, toYYYYMM(timestamp))" in ddl
        assert "ORDER BY (facility_id, production_line, sensor_id, timestamp)" in ddl
        assert "timestamp + INTERVAL 90 DAY TO VOLUME 'warm'" in ddl
        assert "timestamp + INTERVAL 365 DAY TO VOLUME 'cold'" in ddl
        assert "timestamp + INTERVAL 2555 DAY TO VOLUME 'archive'" in ddl
        assert "storage_policy = 'tiered'" in ddl
        assert "index_granularity = 8192" in ddl
        assert "DELETE" not in ddl

    def test_events_use_longer_tiers(self):
        ddl = TABLES[PRODUCTION_EVENTS].create_statement()
        assert "INTERVAL 180 DAY TO VOLUME 'warm'" in ddl
        assert "INTERVAL 730 DAY TO VOLUME 'cold'" in ddl
        assert "resolved_at Nullable(DateTime64(3))" in ddl

    def test_tiering_can_be_disabled(self):
        ddl = TABLES[QUALITY_MEASUREMENTS].create_statement(storage_policy=None, tiered_storage=False)
        assert "TTL" not in ddl
        assert "storage_policy" not in ddl

    def test_unknown_table(self):
        with pytest.raises(KeyError):
            get_table("nope")


class TestTiering:
    """Test which volume a record resides on."""

    def test_hundred_day_old_reading_is_warm(self):
        ts = NOW - timedelta(days=100)
        assert tier_for_timestamp(SENSOR_READINGS, ts, NOW) == Tier.WARM

    @pytest.mark.parametrize(
        "days,tier",
        [(0, Tier.HOT), (89, Tier.HOT), (90, Tier.WARM), (365, Tier.COLD), (4000, Tier.ARCHIVE)],
    )
    def test_standard_boundaries(self, days, tier):
        assert tier_for_age(SENSOR_READINGS, timedelta(days=days)) == tier

    def test_hundred_day_old_event_is_still_hot(self):
        assert tier_for_age(PRODUCTION_EVENTS, timedelta(days=100)) == Tier.HOT

    def test_future_timestamp_is_hot(self):
        assert tier_for_timestamp(SENSOR_READINGS, NOW + timedelta(days=1), NOW) == Tier.HOT


class TestDownsamplingViews:
    """Test the view declarations."""

    def test_views_aggregate_incrementally(self):
        ddl = ONE_MINUTE_VIEW.create_statement("tiered")
        assert ddl.startswith("CREATE MATERIALIZED VIEW IF NOT EXISTS sensor_data_1min_mv")
        assert "AggregatingMergeTree" in ddl
        assert "toStartOfMinute(timestamp) AS time_bucket" in ddl
        assert "quantilesState(0.25, 0.5, 0.75)(value)" in ddl
        assert "FROM sensor_readings" in ddl

    def test_hour_view_quantiles(self):
        ddl = ONE_HOUR_VIEW.create_statement()
        assert "toStartOfHour(timestamp)" in ddl
        assert "quantilesState(0.1, 0.25, 0.5, 0.75, 0.9)(value)" in ddl

    def test_select_finalizes_states(self):
        sql = ONE_HOUR_VIEW.select_statement(with_facility=True)
        assert "avgMerge(avg_value) AS avg_value" in sql
        assert "ORDER BY sensor_id, time_bucket" in sql
        assert "{facility_id:UInt32}" in sql

    @pytest.mark.asyncio
    async def test_backfill_binds_window(self, fake_client, fake_engine):
        maintainer = DownsamplingMaintainer()
        start = NOW - timedelta(days=1)
        await maintainer.backfill(fake_client, "sensor_data_1hour_mv", start, NOW)

        sql, params = fake_engine.commands[-1]
        assert sql.startswith("INSERT INTO sensor_data_1hour_mv")
        assert params == {"start": start, "end": NOW}

    @pytest.mark.asyncio
    async def test_consistency_report(self, fake_client, fake_engine):
        fake_engine.rows[SENSOR_READINGS] = [{}] * 3
        report = await DownsamplingMaintainer().check_consistency(
            fake_client, "sensor_data_1min_mv", NOW - timedelta(hours=1), NOW
        )
        assert report.raw_count == 3
        assert report.view_count == 0
        assert not report.consistent

    def test_unknown_view(self):
        with pytest.raises(KeyError):
            DownsamplingMaintainer().get_view("sensor_data_1day_mv")


class TestSchemaRegistry:
    """Test idempotent materialization."""

    @pytest.mark.asyncio
    async def test_creates_tables_before_views(self, fake_client, fake_engine):
        created = await SchemaRegistry().materialize(fake_client)

        assert created == [
            SENSOR_READINGS,
            QUALITY_MEASUREMENTS,
            PRODUCTION_EVENTS,
            "sensor_data_1min_mv",
            "sensor_data_1hour_mv",
        ]
        assert fake_engine.objects == set(created)

    @pytest.mark.asyncio
    async def test_second_run_tolerates_existing_objects(self, fake_client, fake_engine):
        registry = SchemaRegistry()
        await registry.materialize(fake_client)

        created = await registry.materialize(fake_client)

        assert created == []
        assert len(fake_engine.objects) == 5

    @pytest.mark.asyncio
    async def test_other_engine_errors_raise_schema_error(self, fake_client, fake_engine):
        fake_engine.create_error = ClickHouseError(
            "Code: 478. DB::Exception: Unknown storage policy `tiered`", code=478
        )
        with pytest.raises(SchemaError) as exc_info:
            await SchemaRegistry().materialize(fake_client)
        assert exc_info.value.object_name == SENSOR_READINGS

    @pytest.mark.asyncio
    async def test_connectivity_errors_propagate(self, fake_client, fake_engine):
        fake_engine.unreachable = True
        with pytest.raises(ConnectivityError):
            await SchemaRegistry().materialize(fake_client)

    @pytest.mark.asyncio
    async def test_missing_objects(self, fake_client, fake_engine):
        registry = SchemaRegistry()
        fake_engine.objects.update({SENSOR_READINGS, "sensor_data_1min_mv"})

        missing = await registry.missing_objects(fake_client)

        assert missing == [QUALITY_MEASUREMENTS, PRODUCTION_EVENTS, "sensor_data_1hour_mv"]
