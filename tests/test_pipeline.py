from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import pytest

from sensor_monitor._transport import AttemptOutcome
from sensor_monitor.config import RetryPolicy, TagPolicy
from sensor_monitor.exceptions import RegistrationError
from sensor_monitor.forwarder import Forwarder
from sensor_monitor.models import DeviceIdentity, RawMessage
from sensor_monitor.pipeline import Pipeline

TOPIC = "tele/stue/SENSOR"
IDENTITY = DeviceIdentity(id=1, name="esp32_stue", location="Stue")
NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


class _FakeMeasurementApi:
    """Transport double: answers per sensor name, defaults to 201."""

    def __init__(self, statuses: dict[str, int] | None = None) -> None:
        self.statuses = statuses or {}
        self.bodies: list[dict[str, Any]] = []

    async def post_json(self, _url: str, body: Mapping[str, Any]) -> AttemptOutcome:
        self.bodies.append(dict(body))
        return AttemptOutcome(status=self.statuses.get(str(body["sensor_name"]), 201))

    def accepted(self) -> list[dict[str, Any]]:
        return [body for body in self.bodies if self.statuses.get(body["sensor_name"], 201) < 300]


def _pipeline(api: _FakeMeasurementApi, policy: TagPolicy | None = None) -> Pipeline:
    forwarder = Forwarder(api, "http://hemrs.test/api/measurements", retry=NO_WAIT)
    return Pipeline(IDENTITY, policy or TagPolicy(), forwarder)


@pytest.mark.asyncio
async def test_two_sensor_payload_forwards_three_records() -> None:
    api = _FakeMeasurementApi()
    pipeline = _pipeline(api)
    payload = b'{"DS18B20":{"Temperature":21.5},"DHT11":{"Temperature":22.0,"Humidity":55.0}}'

    forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=payload))

    assert forwarded == 3
    assert [(b["sensor_name"], b["kind"], b["value"]) for b in api.bodies] == [
        ("DS18B20 Temperature", "temperature", 21.5),
        ("DHT11 Temperature", "temperature", 22.0),
        ("DHT11 Humidity", "humidity", 55.0),
    ]
    for body in api.bodies:
        assert body["device"] == 1
        assert body["device_name"] == "esp32_stue"
        assert body["location"] == "Stue"
    assert pipeline.stats.forwarded == 3
    assert pipeline.stats.messages == 1


@pytest.mark.asyncio
async def test_malformed_message_is_dropped_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    api = _FakeMeasurementApi()
    pipeline = _pipeline(api)

    with caplog.at_level(logging.WARNING, logger="sensor_monitor.pipeline"):
        forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=b"\x00\x01not json"))

    assert forwarded == 0
    assert api.bodies == []
    assert pipeline.stats.dropped_messages == 1
    assert "stage=decode" in caplog.text
    assert TOPIC in caplog.text


@pytest.mark.asyncio
async def test_message_without_sensor_fields_is_ignored_quietly(caplog: pytest.LogCaptureFixture) -> None:
    pipeline = _pipeline(_FakeMeasurementApi())

    with caplog.at_level(logging.WARNING, logger="sensor_monitor.pipeline"):
        forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=b'{"Time":"2026-10-18T12:00:00"}'))

    assert forwarded == 0
    assert pipeline.stats.ignored_messages == 1
    assert caplog.records == []


@pytest.mark.asyncio
async def test_out_of_range_field_is_skipped_but_siblings_forwarded() -> None:
    api = _FakeMeasurementApi()
    pipeline = _pipeline(api)
    payload = b'{"DS18B20":{"Temperature":150.0},"DHT11":{"Humidity":55.0}}'

    forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=payload))

    assert forwarded == 1
    assert api.bodies[0]["sensor_name"] == "DHT11 Humidity"
    assert pipeline.stats.rejected_fields == 1


@pytest.mark.asyncio
async def test_strict_policy_drops_unknown_tags_only() -> None:
    api = _FakeMeasurementApi()
    pipeline = _pipeline(api, TagPolicy(strict=True, accepted_tags=frozenset({"DHT11"})))
    payload = b'{"DS18B20":{"Temperature":21.5},"DHT11":{"Temperature":22.0}}'

    forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=payload))

    assert forwarded == 1
    assert [b["sensor_name"] for b in api.bodies] == ["DHT11 Temperature"]
    assert pipeline.stats.unknown_tags == 1


@pytest.mark.asyncio
async def test_forward_failures_do_not_stop_remaining_records() -> None:
    api = _FakeMeasurementApi({"DS18B20 Temperature": 400, "DHT11 Temperature": 503})
    pipeline = _pipeline(api)
    payload = b'{"DS18B20":{"Temperature":21.5},"DHT11":{"Temperature":22.0,"Humidity":55.0}}'

    forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=payload))

    assert forwarded == 1
    assert pipeline.stats.forward_rejected == 1
    assert pipeline.stats.forward_failed == 1
    # One attempt for the 400, the full budget for the 503, one for the humidity.
    assert len(api.bodies) == 1 + NO_WAIT.max_attempts + 1
    assert [b["sensor_name"] for b in api.accepted()] == ["DHT11 Humidity"]


@pytest.mark.parametrize(
    "payload",
    [
        b'{" ": {"Temperature": 20.0}}',
        b'{"DS18B20": {"Temperature": ' + b"9" * 401 + b"}}",
        b'{"DHT11": {"Humidity": ' + b"1" * 5001 + b"}}",
    ],
)
@pytest.mark.asyncio
async def test_undecodable_values_are_counted_as_dropped(payload: bytes, caplog: pytest.LogCaptureFixture) -> None:
    api = _FakeMeasurementApi()
    pipeline = _pipeline(api)

    with caplog.at_level(logging.WARNING, logger="sensor_monitor.pipeline"):
        forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=payload))

    assert forwarded == 0
    assert api.bodies == []
    assert pipeline.stats.dropped_messages == 1
    assert "stage=decode" in caplog.text


class _FakeSensors:
    """Sensor directory double with fixed ids; unknown names fail to register."""

    def __init__(self, ids: dict[str, int]) -> None:
        self.ids = ids

    async def ensure(self, name: str, unit: str) -> int:
        if name not in self.ids:
            raise RegistrationError(f"cannot register {name} ({unit})")
        return self.ids[name]


@pytest.mark.asyncio
async def test_registered_sensor_ids_are_forwarded() -> None:
    api = _FakeMeasurementApi()
    sensors = _FakeSensors({"DS18B20 Temperature": 4, "DHT11 Temperature": 1})
    forwarder = Forwarder(api, "http://hemrs.test/api/measurements", retry=NO_WAIT)
    pipeline = Pipeline(IDENTITY, TagPolicy(), forwarder, sensors=sensors)  # type: ignore[arg-type]
    payload = b'{"DS18B20":{"Temperature":21.5},"DHT11":{"Temperature":22.0,"Humidity":55.0}}'

    forwarded = await pipeline.handle(RawMessage(topic=TOPIC, payload=payload))

    assert forwarded == 2
    assert [(b["sensor_name"], b["sensor"], b["device"]) for b in api.bodies] == [
        ("DS18B20 Temperature", 4, 1),
        ("DHT11 Temperature", 1, 1),
    ]
    assert pipeline.stats.unregistered_sensors == 1
