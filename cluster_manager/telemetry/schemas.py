"""
Typed telemetry schemas.

Record models for the three telemetry tables, the query request and result
shapes, and typed row structs for what the engine returns from the raw table
and the downsampling views.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


def _assume_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


# ============================================================================
# ENUMS
# ============================================================================


class SensorType(str, Enum):
    TEMPERATURE = "temperature"
    PRESSURE = "pressure"
    FLOW = "flow"
    VIBRATION = "vibration"
    CURRENT = "current"


class SensorStatus(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    ERROR = "ERROR"
    MAINTENANCE = "MAINTENANCE"


class QualityVerdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    REVIEW = "REVIEW"


class EventType(str, Enum):
    START = "START"
    STOP = "STOP"
    PAUSE = "PAUSE"
    ALARM = "ALARM"
    MAINTENANCE = "MAINTENANCE"


class EventSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Resolution(str, Enum):
    """Granularity a telemetry query is answered from."""

    RAW = "raw"
    ONE_MINUTE = "1min"
    ONE_HOUR = "1hour"


# ============================================================================
# TELEMETRY RECORDS
# ============================================================================


class SensorReading(BaseModel):
    """One sensor sample. Append-only once ingested."""

    facility_id: int = Field(ge=0, description="Owning facility, part of the partition key")
    production_line: str = Field(min_length=1)
    sensor_id: str = Field(min_length=1)
    sensor_type: SensorType
    timestamp: UtcDatetime = Field(description="Sample time, millisecond precision")
    value: float
    unit: str = ""
    quality_score: float = Field(default=1.0, ge=0.0, le=1.0)
    status: SensorStatus = SensorStatus.OK
    batch_id: Optional[str] = None
    operator_id: Optional[str] = None
    shift_id: Optional[str] = None
    recipe_id: Optional[str] = None
    product_type: Optional[str] = None
    ambient_temperature: Optional[float] = None
    ambient_humidity: Optional[float] = None


class QualityMeasurement(BaseModel):
    """One quality-control measurement for a batch."""

    measurement_id: str = Field(min_length=1)
    facility_id: int = Field(ge=0)
    production_line: str = Field(min_length=1)
    batch_id: str = Field(min_length=1)
    product_id: Optional[str] = None
    timestamp: UtcDatetime
    measurement_type: str = Field(min_length=1)
    measured_value: float
    target_value: float
    tolerance_upper: float
    tolerance_lower: float
    pass_fail: QualityVerdict
    inspector_id: Optional[str] = None
    equipment_id: Optional[str] = None
    test_method: Optional[str] = None
    environmental_conditions: Dict[str, float] = Field(default_factory=dict)
    process_parameters: Dict[str, float] = Field(default_factory=dict)
    raw_material_lot: Optional[str] = None
    supplier_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_tolerances(self) -> "QualityMeasurement":
        if self.tolerance_lower > self.tolerance_upper:
            raise ValueError("tolerance_lower must not exceed tolerance_upper")
        return self


class ProductionEvent(BaseModel):
    """Production line event. Only the resolution fields change after ingestion."""

    event_id: str = Field(min_length=1)
    facility_id: int = Field(ge=0)
    production_line: str = Field(min_length=1)
    timestamp: UtcDatetime
    event_type: EventType
    event_category: str = ""
    severity: EventSeverity = EventSeverity.INFO
    description: str = ""
    operator_id: Optional[str] = None
    shift_id: Optional[str] = None
    equipment_id: Optional[str] = None
    duration_seconds: int = Field(default=0, ge=0)
    batch_id: Optional[str] = None
    order_id: Optional[str] = None
    recipe_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None


class EventResolution(BaseModel):
    resolved_by: str = Field(min_length=1)
    resolution_notes: str = ""
    resolved_at: Optional[datetime] = None


# ============================================================================
# QUERIES
# ============================================================================


class TimeRange(BaseModel):
    """Closed interval [start, end]."""

    start: UtcDatetime
    end: UtcDatetime


class TelemetryQuery(BaseModel):
    """
    Sensor series request.

    Bounds are checked by the planner so malformed requests fail with an
    InputError before any I/O.
    """

    sensor_ids: List[str]
    time_range: TimeRange
    max_points: int = Field(description="Total row budget across all sensors")
    facility_id: Optional[int] = None


class SeriesPoint(BaseModel):
    sensor_id: str
    timestamp: UtcDatetime
    value: float
    min_value: float
    max_value: float


class QueryResult(BaseModel):
    resolution: Resolution
    source: str = Field(description="Table or view the rows were read from")
    points: List[SeriesPoint] = Field(default_factory=list)

    @property
    def sensor_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for point in self.points:
            seen.setdefault(point.sensor_id, None)
        return list(seen)


class IngestionResult(BaseModel):
    table: str
    records_written: int = 0
    chunks_written: int = 0
    total_chunks: int = 0
    start_chunk: int = 0
    duration_ms: float = 0.0


# ============================================================================
# ENGINE ROWS
# ============================================================================


class RawSensorRow(BaseModel):
    """Row read from sensor_readings."""

    model_config = ConfigDict(extra="ignore")

    sensor_id: str
    timestamp: UtcDatetime
    value: float


class AggregateSensorRow(BaseModel):
    """Finalized bucket read from a downsampling view."""

    model_config = ConfigDict(extra="ignore")

    sensor_id: str
    time_bucket: UtcDatetime
    count: int
    avg_value: float
    min_value: float
    max_value: float
    stddev_value: float = 0.0
    quantiles: List[float] = Field(default_factory=list)
