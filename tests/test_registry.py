from __future__ import annotations

import socket
from typing import TYPE_CHECKING

import aiohttp
import pytest

from sensor_monitor.exceptions import RegistrationError
from sensor_monitor.models import DeviceIdentity
from sensor_monitor.registry import SensorDirectory, catalog_sensors, ensure_device, ensure_sensors

if TYPE_CHECKING:
    from conftest import FakeHemApi

WANTED = DeviceIdentity(name="esp32_stue", location="Stue")


def _devices_url(api: FakeHemApi) -> str:
    return f"{api.base_url}/api/devices"


def _sensors_url(api: FakeHemApi) -> str:
    return f"{api.base_url}/api/sensors"


@pytest.mark.asyncio
async def test_existing_device_id_is_reused(hem_api: FakeHemApi) -> None:
    hem_api.devices = [
        {"id": 1, "name": "esp32_vinterhage", "location": "Vinterhage"},
        {"id": 4, "name": "esp32_stue", "location": "Stue"},
    ]

    async with aiohttp.ClientSession() as session:
        identity = await ensure_device(session, _devices_url(hem_api), WANTED)

    assert identity.id == 4
    assert identity.name == "esp32_stue"
    assert hem_api.created_devices == []


@pytest.mark.asyncio
async def test_missing_device_is_created_once(hem_api: FakeHemApi) -> None:
    hem_api.devices = [{"id": 1, "name": "esp32_stue", "location": "Kjeller"}]

    async with aiohttp.ClientSession() as session:
        identity = await ensure_device(session, _devices_url(hem_api), WANTED)

    assert hem_api.created_devices == [{"name": "esp32_stue", "location": "Stue"}]
    assert identity.id == 2


@pytest.mark.asyncio
async def test_device_still_missing_after_creation_is_an_error(hem_api: FakeHemApi) -> None:
    hem_api.assign_ids = False

    async with aiohttp.ClientSession() as session:
        with pytest.raises(RegistrationError):
            await ensure_device(session, _devices_url(hem_api), WANTED)

    assert len(hem_api.created_devices) == 1


@pytest.mark.asyncio
async def test_server_error_is_a_registration_error(hem_api: FakeHemApi) -> None:
    hem_api.list_status = 500

    async with aiohttp.ClientSession() as session:
        with pytest.raises(RegistrationError, match="HTTP 500"):
            await ensure_device(session, _devices_url(hem_api), WANTED)


@pytest.mark.asyncio
async def test_slow_api_is_a_registration_error_within_timeout(hem_api: FakeHemApi) -> None:
    hem_api.list_delay = 0.5

    async with aiohttp.ClientSession() as session:
        with pytest.raises(RegistrationError):
            await ensure_device(
                session,
                _devices_url(hem_api),
                WANTED,
                timeout=aiohttp.ClientTimeout(total=0.05),
            )


@pytest.mark.asyncio
async def test_unreachable_api_is_a_registration_error() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    async with aiohttp.ClientSession() as session:
        with pytest.raises(RegistrationError):
            await ensure_device(session, f"http://127.0.0.1:{port}/api/devices", WANTED)


def test_catalog_sensors_for_accepted_tags() -> None:
    assert catalog_sensors({"DS18B20", "DHT11", "BME280"}) == [
        ("DHT11 Temperature", "°C"),
        ("DHT11 Humidity", "%"),
        ("DHT11 Dew Point", "°C"),
        ("DS18B20 Temperature", "°C"),
    ]


@pytest.mark.asyncio
async def test_missing_sensors_are_created_once_each(hem_api: FakeHemApi) -> None:
    hem_api.sensors = [{"id": 1, "name": "DHT11 Humidity", "unit": "%"}]

    async with aiohttp.ClientSession() as session:
        ids = await ensure_sensors(session, _sensors_url(hem_api), catalog_sensors({"DHT11"}))

    assert hem_api.created_sensors == [
        {"name": "DHT11 Temperature", "unit": "°C"},
        {"name": "DHT11 Dew Point", "unit": "°C"},
    ]
    assert ids == {"DHT11 Temperature": 2, "DHT11 Humidity": 1, "DHT11 Dew Point": 3}


@pytest.mark.asyncio
async def test_registered_sensors_are_not_created_again(hem_api: FakeHemApi) -> None:
    hem_api.sensors = [
        {"id": 9, "name": "DS18B20 Temperature", "unit": "°C"},
        {"id": 3, "name": "Unrelated", "unit": "V"},
    ]

    async with aiohttp.ClientSession() as session:
        ids = await ensure_sensors(session, _sensors_url(hem_api), catalog_sensors({"DS18B20"}))

    assert ids == {"DS18B20 Temperature": 9}
    assert hem_api.created_sensors == []


@pytest.mark.asyncio
async def test_sensor_still_missing_after_creation_is_an_error(hem_api: FakeHemApi) -> None:
    hem_api.assign_ids = False

    async with aiohttp.ClientSession() as session:
        with pytest.raises(RegistrationError, match="DS18B20 Temperature"):
            await ensure_sensors(session, _sensors_url(hem_api), catalog_sensors({"DS18B20"}))


@pytest.mark.asyncio
async def test_sensor_directory_registers_unseen_sensor_once(hem_api: FakeHemApi) -> None:
    async with aiohttp.ClientSession() as session:
        directory = SensorDirectory(session, _sensors_url(hem_api))
        await directory.preload(catalog_sensors({"DS18B20"}))
        first = await directory.ensure("BME280 Temperature", "°C")
        second = await directory.ensure("BME280 Temperature", "°C")

    assert first == second == hem_api.sensor_ids["BME280 Temperature"]
    assert directory.get("DS18B20 Temperature") == hem_api.sensor_ids["DS18B20 Temperature"]
    assert [body["name"] for body in hem_api.created_sensors] == ["DS18B20 Temperature", "BME280 Temperature"]
