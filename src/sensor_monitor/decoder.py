"""Decode device telemetry into sensor readings.

The firmware publishes one JSON object per telemetry period. Every
object-valued top-level key is a sensor block named by its tag::

    {"Time": "2024-11-03T10:15:00",
     "DS18B20": {"Id": "3C01D607A3B1", "Temperature": 21.5},
     "DHT11": {"Temperature": 22.0, "Humidity": 55.0, "DewPoint": 12.6},
     "TempUnit": "C"}

Decoding is a tolerant structural parse: known measurement keys are
projected into :class:`SensorReading` objects, everything else is ignored.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from sensor_monitor.exceptions import (
    DecodeError,
    MalformedPayloadError,
    OutOfRangeError,
    UnrecognizedFieldError,
)
from sensor_monitor.models import RawMessage, SensorKind, SensorReading, is_plausible

MEASUREMENT_FIELDS: dict[str, SensorKind] = {
    "Temperature": SensorKind.TEMPERATURE,
    "Humidity": SensorKind.HUMIDITY,
    "DewPoint": SensorKind.DEW_POINT,
}

_TEMPERATURE_KINDS = frozenset({SensorKind.TEMPERATURE, SensorKind.DEW_POINT})


@dataclass(frozen=True)
class DecodeResult:
    """Readings decoded from one message plus the fields that were rejected."""

    readings: tuple[SensorReading, ...]
    rejected: tuple[DecodeError, ...] = ()


def fahrenheit_to_celsius(value: float) -> float:
    return (value - 32.0) * 5.0 / 9.0


def parse_payload(payload: bytes) -> dict[str, Any]:
    """Parse raw payload bytes into a JSON object.

    Raises :class:`MalformedPayloadError` for non-UTF-8 bytes, invalid JSON
    or a top-level value that is not an object.
    """
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayloadError(f"Payload is not UTF-8: {exc}") from exc
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedPayloadError(f"Payload is not JSON: {exc.msg} at position {exc.pos}") from exc
    except (ValueError, RecursionError) as exc:
        # Integer literals past the int digit limit, or nesting past the recursion limit.
        raise MalformedPayloadError(f"Payload is not decodable JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedPayloadError(f"Payload is JSON {type(parsed).__name__}, expected an object")
    return parsed


def _sensor_blocks(document: Mapping[str, Any]) -> list[tuple[str, Mapping[str, Any]]]:
    return [(str(tag), block) for tag, block in document.items() if isinstance(block, Mapping)]


def _to_number(tag: str, field_name: str, kind: SensorKind, value: Any) -> float:
    # bool is an int subclass; firmware never sends one for a measurement.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPayloadError(f"{tag}.{field_name} is not numeric: {value!r}")
    try:
        return float(value)
    except OverflowError as exc:
        raise OutOfRangeError(
            f"{tag} {kind.label} integer is too large for a float",
            kind=kind.value,
            sensor_tag=tag,
        ) from exc


def _project_block(
    tag: str,
    block: Mapping[str, Any],
    raw: RawMessage,
    *,
    fahrenheit: bool,
    readings: list[SensorReading],
    rejected: list[DecodeError],
) -> int:
    """Append readings for the known fields of one block. Returns fields seen."""
    seen = 0
    for field_name, kind in MEASUREMENT_FIELDS.items():
        if field_name not in block:
            continue
        seen += 1
        value = block[field_name]
        if value is None:
            # Firmware reports null when a read failed.
            continue
        try:
            number = _to_number(tag, field_name, kind, value)
        except DecodeError as exc:
            rejected.append(exc)
            continue
        if fahrenheit and kind in _TEMPERATURE_KINDS:
            number = fahrenheit_to_celsius(number)
        if not is_plausible(kind, number):
            low, high = kind.plausible_range
            rejected.append(
                OutOfRangeError(
                    f"{tag} {kind.label} {number} outside plausible range [{low}, {high}]",
                    kind=kind.value,
                    value=number,
                    sensor_tag=tag,
                )
            )
            continue
        try:
            reading = SensorReading(kind=kind, value=number, sensor_tag=tag, timestamp=raw.received_at)
        except ValidationError as exc:
            detail = exc.errors()[0]["msg"]
            rejected.append(MalformedPayloadError(f"{tag!r}.{field_name} is not a valid reading: {detail}"))
            continue
        readings.append(reading)
    return seen


def decode(raw: RawMessage) -> DecodeResult:
    """Decode one message into zero or more readings.

    Valid fields yield readings even when sibling fields are rejected; the
    rejected ones are reported in :attr:`DecodeResult.rejected`.

    Raises
    ------
    MalformedPayloadError
        The payload is not a JSON object.
    UnrecognizedFieldError
        No known measurement field is present.
    OutOfRangeError, MalformedPayloadError
        Every measurement field was rejected; the first rejection is raised.
    """
    document = parse_payload(raw.payload)
    unit = document.get("TempUnit")
    fahrenheit = isinstance(unit, str) and unit.strip().upper() == "F"

    readings: list[SensorReading] = []
    rejected: list[DecodeError] = []
    seen = 0
    for tag, block in _sensor_blocks(document):
        seen += _project_block(tag, block, raw, fahrenheit=fahrenheit, readings=readings, rejected=rejected)

    if seen == 0:
        raise UnrecognizedFieldError(f"No measurement fields in payload on {raw.topic}")
    if not readings and rejected:
        raise rejected[0]
    return DecodeResult(readings=tuple(readings), rejected=tuple(rejected))
