"""
Synthetic sensor readings for development clusters.

One reading per sensor per minute, with type-specific base values and
+/-10% noise. Sensors rotate through the sensor types and production lines.
"""

import random
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

from cluster_manager.telemetry.schemas import SensorReading, SensorStatus, SensorType

BASE_VALUES: Dict[SensorType, float] = {
    SensorType.TEMPERATURE: 25.0,
    SensorType.PRESSURE: 1.0,
    SensorType.FLOW: 100.0,
    SensorType.VIBRATION: 0.1,
    SensorType.CURRENT: 5.0,
}

UNITS: Dict[SensorType, str] = {
    SensorType.TEMPERATURE: "°C",
    SensorType.PRESSURE: "atm",
    SensorType.FLOW: "L/min",
    SensorType.VIBRATION: "mm/s",
    SensorType.CURRENT: "A",
}

PRODUCTION_LINES = ("Line-A", "Line-B", "Line-C")
SENSOR_TYPES = tuple(SensorType)


def sensor_value(sensor_type: SensorType, rng: random.Random) -> float:
    base = BASE_VALUES[sensor_type]
    return base + (rng.random() - 0.5) * 2 * base * 0.1


def iter_test_readings(
    facility_id: int,
    sensor_count: int = 100,
    minutes: int = 24 * 60,
    end: Optional[datetime] = None,
    seed: Optional[int] = None,
) -> Iterator[SensorReading]:
    """
    Yield readings sensor by sensor, each sensor in time order.

    Args:
        facility_id: Facility the readings belong to
        sensor_count: Number of distinct sensors
        minutes: Readings per sensor (one per minute)
        end: Time of the last reading, defaults to now
        seed: Seed for reproducible values
    """
    rng = random.Random(seed)
    end = end or datetime.now(timezone.utc)
    start = end - timedelta(minutes=minutes - 1)

    for i in range(sensor_count):
        sensor_type = SENSOR_TYPES[i % len(SENSOR_TYPES)]
        line = PRODUCTION_LINES[i % len(PRODUCTION_LINES)]
        unit = UNITS[sensor_type]
        for minute in range(minutes):
            roll = rng.random()
            if roll > 0.05:
                status = SensorStatus.OK
            elif roll > 0.025:
                status = SensorStatus.WARNING
            else:
                status = SensorStatus.ERROR
            yield SensorReading(
                facility_id=facility_id,
                production_line=line,
                sensor_id=f"{sensor_type.value}_{i:03d}",
                sensor_type=sensor_type,
                timestamp=start + timedelta(minutes=minute),
                value=sensor_value(sensor_type, rng),
                unit=unit,
                quality_score=1.0 if rng.random() > 0.1 else rng.random() * 0.8 + 0.2,
                status=status,
                batch_id=f"BATCH_{minute // 60}_{line}",
                operator_id=f"OP_{rng.randrange(10)}",
                shift_id=str(minute // 480 + 1),
            )


def generate_test_readings(
    facility_id: int,
    sensor_count: int = 100,
    minutes: int = 24 * 60,
    end: Optional[datetime] = None,
    seed: Optional[int] = None,
) -> List[SensorReading]:
    return list(iter_test_readings(facility_id, sensor_count, minutes, end, seed))
