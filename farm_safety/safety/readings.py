"""Sensor readings consumed from the ingestion collaborator."""
from typing import Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, Field

from farm_safety.models.enums import ReadingQuality, ReadingType, Unit
from farm_safety.timestamps import from_iso


class SensorReading(BaseModel):
    timestamp: str
    sensor_id: str
    reading_type: ReadingType
    value: float
    unit: Unit
    battery_pct: Optional[float] = Field(None, ge=0, le=100)
    quality: Optional[ReadingQuality] = None


def to_fahrenheit(value: float, unit: Unit) -> float:
    if unit == Unit.CELSIUS:
        return value * 9 / 5 + 32
    return value


def latest_by_sensor(readings: Iterable[SensorReading]) -> Dict[Tuple[str, ReadingType], SensorReading]:
    """Newest reading per (sensor_id, reading_type)."""
    latest: Dict[Tuple[str, ReadingType], SensorReading] = {}
    for reading in readings:
        key = (reading.sensor_id, reading.reading_type)
        current = latest.get(key)
        if current is None or from_iso(reading.timestamp) > from_iso(current.timestamp):
            latest[key] = reading
    return latest
