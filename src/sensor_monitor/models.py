"""Data models flowing through the ingestion pipeline.

* :class:`RawMessage` is what the message source hands over: bytes plus topic.
* :class:`SensorReading` is one validated measurement from one sensor block.
* :class:`DeviceIdentity` is the configured device every reading belongs to.
* :class:`ForwardRecord` pairs the two and knows the monitoring API wire shape.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RawMessage:
    """An inbound broker message, stamped with its receipt time."""

    topic: str
    payload: bytes
    received_at: datetime = field(default_factory=_utcnow)


class SensorKind(StrEnum):
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    DEW_POINT = "dew_point"

    @property
    def unit(self) -> str:
        return _UNITS[self]

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def plausible_range(self) -> tuple[float, float]:
        return PLAUSIBLE_RANGES[self]


_UNITS: dict[SensorKind, str] = {
    SensorKind.TEMPERATURE: "°C",
    SensorKind.HUMIDITY: "%",
    SensorKind.DEW_POINT: "°C",
}

_LABELS: dict[SensorKind, str] = {
    SensorKind.TEMPERATURE: "Temperature",
    SensorKind.HUMIDITY: "Humidity",
    SensorKind.DEW_POINT: "Dew Point",
}

# Inclusive bounds. Readings outside are rejected, never clamped.
PLAUSIBLE_RANGES: dict[SensorKind, tuple[float, float]] = {
    SensorKind.TEMPERATURE: (-50.0, 100.0),
    SensorKind.HUMIDITY: (0.0, 100.0),
    SensorKind.DEW_POINT: (-50.0, 100.0),
}


# Sensors the firmware publishes, registered with the monitoring API at startup.
SENSOR_CATALOG: dict[str, tuple[SensorKind, ...]] = {
    "DS18B20": (SensorKind.TEMPERATURE,),
    "DHT11": (SensorKind.TEMPERATURE, SensorKind.HUMIDITY, SensorKind.DEW_POINT),
}


def sensor_name(tag: str, kind: SensorKind) -> str:
    return f"{tag} {kind.label}"


def is_plausible(kind: SensorKind, value: float) -> bool:
    """Return ``True`` when *value* is finite and inside the range for *kind*."""
    if not math.isfinite(value):
        return False
    low, high = PLAUSIBLE_RANGES[kind]
    return low <= value <= high


class SensorReading(BaseModel):
    """One validated measurement.

    Parameters
    ----------
    kind : SensorKind
        What was measured.
    value : float
        Measured value in the unit of *kind*.
    sensor_tag : str
        Sensor model tag from the payload, e.g. ``"DHT11"``.
    timestamp : datetime
        Receipt time of the message that carried the reading (UTC).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: SensorKind
    value: float
    sensor_tag: str
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("sensor_tag")
    @classmethod
    def _tag_non_empty(cls, value: str) -> str:
        tag = value.strip()
        if not tag:
            raise ValueError("sensor_tag must be non-empty")
        return tag

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _check_range(self) -> SensorReading:
        if not is_plausible(self.kind, self.value):
            low, high = PLAUSIBLE_RANGES[self.kind]
            raise ValueError(f"{self.kind} value {self.value} outside [{low}, {high}]")
        return self

    @property
    def sensor_name(self) -> str:
        """Name the monitoring API knows this sensor by, e.g. ``"DHT11 Humidity"``."""
        return sensor_name(self.sensor_tag, self.kind)


class DeviceIdentity(BaseModel):
    """The logical device readings are attributed to."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    id: int | None = None
    name: str
    location: str

    def matches(self, other: DeviceIdentity) -> bool:
        return self.name == other.name and self.location == other.location


class SensorInfo(BaseModel):
    """A sensor as the monitoring API lists it."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    id: int | None = None
    name: str
    unit: str = ""


class ForwardRecord(BaseModel):
    """A reading bound to its device, ready for the monitoring API."""

    model_config = ConfigDict(frozen=True)

    reading: SensorReading
    device: DeviceIdentity
    sensor_id: int | None = None

    def to_wire(self) -> dict[str, Any]:
        """JSON body for the measurement write endpoint.

        ``device`` and ``sensor`` carry the registered ids and are omitted
        while unknown. The names are always sent.
        """
        body: dict[str, Any] = {
            "device": self.device.id,
            "sensor": self.sensor_id,
            "device_name": self.device.name,
            "location": self.device.location,
            "sensor_name": self.reading.sensor_name,
            "kind": self.reading.kind.value,
            "value": self.reading.value,
            "unit": self.reading.kind.unit,
            "timestamp": self.reading.timestamp.astimezone(UTC).isoformat().replace("+00:00", "Z"),
        }
        for key in ("device", "sensor"):
            if body[key] is None:
                del body[key]
        return body
