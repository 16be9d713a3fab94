"""
Tests for synthetic reading generation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cluster_manager.telemetry.generator import (
    BASE_VALUES,
    generate_test_readings,
    iter_test_readings,
)
from cluster_manager.telemetry.schemas import SensorType

END = datetime(2024, 3, 2, tzinfo=timezone.utc)


def test_one_reading_per_sensor_minute():
    readings = generate_test_readings(3, sensor_count=5, minutes=60, end=END, seed=1)

    assert len(readings) == 300
    assert len({r.sensor_id for r in readings}) == 5
    assert readings[0].timestamp == END - timedelta(minutes=59)
    assert readings[59].timestamp == END
    assert all(r.facility_id == 3 for r in readings)


def test_sensor_types_rotate():
    readings = generate_test_readings(1, sensor_count=6, minutes=1, end=END, seed=1)
    assert [r.sensor_type for r in readings] == [
        SensorType.TEMPERATURE,
        SensorType.PRESSURE,
        SensorType.FLOW,
        SensorType.VIBRATION,
        SensorType.CURRENT,
        SensorType.TEMPERATURE,
    ]
    assert readings[0].sensor_id == "temperature_000"
    assert readings[3].production_line == "Line-A"


@pytest.mark.parametrize("sensor_type", list(SensorType))
def test_values_within_ten_percent(sensor_type):
    base = BASE_VALUES[sensor_type]
    readings = [
        r
        for r in iter_test_readings(1, sensor_count=5, minutes=200, end=END, seed=7)
        if r.sensor_type == sensor_type
    ]
    assert readings
    assert all(base * 0.9 <= r.value <= base * 1.1 for r in readings)


def test_seed_makes_output_reproducible():
    first = generate_test_readings(1, sensor_count=2, minutes=10, end=END, seed=42)
    second = generate_test_readings(1, sensor_count=2, minutes=10, end=END, seed=42)
    assert [r.value for r in first] == [r.value for r in second]


def test_shift_and_batch_follow_time():
    readings = generate_test_readings(1, sensor_count=1, minutes=600, end=END, seed=3)
    assert readings[0].shift_id == "1"
    assert readings[480].shift_id == "2"
    assert readings[61].batch_id == "BATCH_1_Line-A"
