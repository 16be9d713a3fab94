"""
Telemetry table declarations.

Physical layout of the three telemetry tables: columns, partition key,
order key and the TTL rules that relocate aging parts to cheaper volumes.
Nothing here talks to a cluster except create_object().
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from cluster_manager.clickhouse.client import ClickHouseClient
from cluster_manager.errors import ClickHouseError, SchemaError

logger = logging.getLogger(__name__)

SENSOR_READINGS = "sensor_readings"
QUALITY_MEASUREMENTS = "quality_measurements"
PRODUCTION_EVENTS = "production_events"

# Bounds partition count while keeping each facility's month together for TTL moves
PARTITION_KEY = "(facility_id, toYYYYMM(timestamp))"


class Tier(str, Enum):
    """Storage volume a part lives on."""

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class Column:
    name: str
    type: str
    default: Optional[str] = None

    def render(self) -> str:
        if self.default is not None:
            return f"{self.name} {self.type} DEFAULT {self.default}"
        return f"{self.name} {self.type}"


@dataclass(frozen=True)
class TierRule:
    """Move parts to `volume` once their timestamp is `after_days` old."""

    after_days: int
    volume: Tier

    def render(self, time_column: str = "timestamp") -> str:
        return f"{time_column} + INTERVAL {self.after_days} DAY TO VOLUME '{self.volume.value}'"


@dataclass(frozen=True)
class TableSpec:
    """Declared shape of one MergeTree telemetry table."""

    name: str
    columns: Tuple[Column, ...]
    order_by: Tuple[str, ...]
    tier_rules: Tuple[TierRule, ...]
    partition_by: str = PARTITION_KEY
    time_column: str = "timestamp"
    settings: Dict[str, str] = field(default_factory=dict)

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def create_statement(
        self, storage_policy: Optional[str] = "tiered", tiered_storage: bool = True
    ) -> str:
        """
        Render CREATE TABLE IF NOT EXISTS DDL.

        Args:
            storage_policy: Policy defining the warm/cold/archive volumes
            tiered_storage: Emit TTL ... TO VOLUME rules
        """
        columns = ",\n    ".join(c.render() for c in self.columns)
        lines = [
            f"CREATE TABLE IF NOT EXISTS {self.name} (\n    {columns}\n)",
            "ENGINE = MergeTree()",
            f"PARTITION BY {self.partition_by}",
            f"ORDER BY ({', '.join(self.order_by)})",
        ]
        if tiered_storage and self.tier_rules:
            rules = ",\n    ".join(r.render(self.time_column) for r in self.tier_rules)
            lines.append(f"TTL {rules}")

        settings = dict(self.settings)
        if storage_policy:
            settings["storage_policy"] = f"'{storage_policy}'"
        if settings:
            lines.append("SETTINGS " + ", ".join(f"{k} = {v}" for k, v in settings.items()))
        return "\n".join(lines)

    def tier_for_age(self, age: timedelta) -> Tier:
        """Volume a record of the given age resides on. Records are never dropped."""
        tier = Tier.HOT
        for rule in sorted(self.tier_rules, key=lambda r: r.after_days):
            if age >= timedelta(days=rule.after_days):
                tier = rule.volume
        return tier


STANDARD_TIERS = (
    TierRule(90, Tier.WARM),
    TierRule(365, Tier.COLD),
    TierRule(2555, Tier.ARCHIVE),
)

# Lower volume and used for longer audits
EVENT_TIERS = (
    TierRule(180, Tier.WARM),
    TierRule(730, Tier.COLD),
    TierRule(2555, Tier.ARCHIVE),
)

SENSOR_READINGS_TABLE = TableSpec(
    name=SENSOR_READINGS,
    columns=(
        Column("facility_id", "UInt32"),
        Column("production_line", "String"),
        Column("sensor_id", "String"),
        Column(
            "sensor_type",
            "Enum8('temperature' = 1, 'pressure' = 2, 'flow' = 3, 'vibration' = 4, 'current' = 5)",
        ),
        Column("timestamp", "DateTime64(3)"),
        Column("value", "Float64"),
        Column("unit", "String"),
        Column("quality_score", "Float32", default="1.0"),
        Column("status", "Enum8('OK' = 1, 'WARNING' = 2, 'ERROR' = 3, 'MAINTENANCE' = 4)"),
        Column("batch_id", "String"),
        Column("operator_id", "String"),
        Column("shift_id", "String"),
        Column("recipe_id", "String"),
        Column("product_type", "String"),
        Column("ambient_temperature", "Float32"),
        Column("ambient_humidity", "Float32"),
    ),
    order_by=("facility_id", "production_line", "sensor_id", "timestamp"),
    tier_rules=STANDARD_TIERS,
    settings={"index_granularity": "8192"},
)

QUALITY_MEASUREMENTS_TABLE = TableSpec(
    name=QUALITY_MEASUREMENTS,
    columns=(
        Column("measurement_id", "String"),
        Column("facility_id", "UInt32"),
        Column("production_line", "String"),
        Column("batch_id", "String"),
        Column("product_id", "String"),
        Column("timestamp", "DateTime64(3)"),
        Column("measurement_type", "String"),
        Column("measured_value", "Float64"),
        Column("target_value", "Float64"),
        Column("tolerance_upper", "Float64"),
        Column("tolerance_lower", "Float64"),
        Column("pass_fail", "Enum8('PASS' = 1, 'FAIL' = 2, 'REVIEW' = 3)"),
        Column("inspector_id", "String"),
        Column("equipment_id", "String"),
        Column("test_method", "String"),
        Column("environmental_conditions", "Map(String, Float64)"),
        Column("raw_material_lot", "String"),
        Column("supplier_id", "String"),
        Column("process_parameters", "Map(String, Float64)"),
    ),
    order_by=("facility_id", "production_line", "batch_id", "timestamp"),
    tier_rules=STANDARD_TIERS,
)

PRODUCTION_EVENTS_TABLE = TableSpec(
    name=PRODUCTION_EVENTS,
    columns=(
        Column("event_id", "String"),
        Column("facility_id", "UInt32"),
        Column("production_line", "String"),
        Column("timestamp", "DateTime64(3)"),
        Column(
            "event_type",
            "Enum8('START' = 1, 'STOP' = 2, 'PAUSE' = 3, 'ALARM' = 4, 'MAINTENANCE' = 5)",
        ),
        Column("event_category", "String"),
        Column("severity", "Enum8('INFO' = 1, 'WARNING' = 2, 'ERROR' = 3, 'CRITICAL' = 4)"),
        Column("description", "String"),
        Column("operator_id", "String"),
        Column("shift_id", "String"),
        Column("equipment_id", "String"),
        Column("duration_seconds", "UInt32", default="0"),
        Column("batch_id", "String"),
        Column("order_id", "String"),
        Column("recipe_id", "String"),
        Column("resolved_at", "Nullable(DateTime64(3))"),
        Column("resolved_by", "String"),
        Column("resolution_notes", "String"),
    ),
    order_by=("facility_id", "production_line", "event_type", "timestamp"),
    tier_rules=EVENT_TIERS,
)

TABLES: Dict[str, TableSpec] = {
    spec.name: spec
    for spec in (SENSOR_READINGS_TABLE, QUALITY_MEASUREMENTS_TABLE, PRODUCTION_EVENTS_TABLE)
}


def get_table(name: str) -> TableSpec:
    try:
        return TABLES[name]
    except KeyError:
        raise KeyError(f"Unknown telemetry table: {name}") from None


def tier_for_age(table: str, age: timedelta) -> Tier:
    return get_table(table).tier_for_age(age)


def tier_for_timestamp(table: str, timestamp: datetime, now: Optional[datetime] = None) -> Tier:
    """Report which volume a record with this timestamp resides on."""
    now = now or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return tier_for_age(table, max(now - timestamp, timedelta(0)))


async def create_object(client: ClickHouseClient, name: str, statement: str) -> bool:
    """
    Execute one CREATE statement.

    Returns:
        False if the engine reports the object already exists

    Raises:
        SchemaError: Engine rejected the statement for another reason
        ConnectivityError: Engine unreachable (propagated unchanged)
    """
    try:
        await client.command(statement)
    except ClickHouseError as e:
        if e.already_exists:
            logger.debug(f"{name} already exists")
            return False
        raise SchemaError(name, str(e)) from e
    logger.info(f"Created {name}")
    return True
