"""Startup registration against the monitoring API.

The API keys measurements by device id and sensor id. At startup the
configured name/location pair is looked up in the device list, and the
known sensors in the sensor list; missing entries are created once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any, TypeVar

import aiohttp
from pydantic import BaseModel, TypeAdapter, ValidationError

from sensor_monitor.exceptions import RegistrationError
from sensor_monitor.models import SENSOR_CATALOG, DeviceIdentity, SensorInfo, sensor_name

_logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)

_DEVICE_LIST = TypeAdapter(list[DeviceIdentity])
_SENSOR_LIST = TypeAdapter(list[SensorInfo])


async def _fetch_list(
    http_session: aiohttp.ClientSession,
    url: str,
    adapter: TypeAdapter[list[_ModelT]],
    *,
    timeout: aiohttp.ClientTimeout | None,
) -> list[_ModelT]:
    try:
        async with http_session.get(url, timeout=timeout) as resp:
            if resp.status != 200:
                text = await resp.text()
                raise RegistrationError(f"HTTP {resp.status} from {url}: {text[:200]}")
            payload: Any = await resp.json(content_type=None)
    except (aiohttp.ClientError, TimeoutError) as exc:
        raise RegistrationError(f"Request to {url} failed: {exc!r}") from exc
    except ValueError as exc:
        raise RegistrationError(f"Invalid JSON from {url}") from exc

    try:
        return adapter.validate_python(payload)
    except ValidationError as exc:
        raise RegistrationError(f"Unexpected list shape from {url}: {exc}") from exc


async def _create(
    http_session: aiohttp.ClientSession,
    url: str,
    body: dict[str, Any],
    *,
    timeout: aiohttp.ClientTimeout | None,
) -> None:
    try:
        async with http_session.post(url, json=body, timeout=timeout) as resp:
            if not 200 <= resp.status < 300:
                text = await resp.text()
                raise RegistrationError(f"Creating {body} at {url} returned HTTP {resp.status}: {text[:200]}")
    except (aiohttp.ClientError, TimeoutError) as exc:
        raise RegistrationError(f"Request to {url} failed: {exc!r}") from exc


async def fetch_devices(
    http_session: aiohttp.ClientSession,
    url: str,
    *,
    timeout: aiohttp.ClientTimeout | None = None,
) -> list[DeviceIdentity]:
    """Return every device the API knows about."""
    return await _fetch_list(http_session, url, _DEVICE_LIST, timeout=timeout)


async def fetch_sensors(
    http_session: aiohttp.ClientSession,
    url: str,
    *,
    timeout: aiohttp.ClientTimeout | None = None,
) -> list[SensorInfo]:
    """Return every sensor the API knows about."""
    return await _fetch_list(http_session, url, _SENSOR_LIST, timeout=timeout)


async def create_device(
    http_session: aiohttp.ClientSession,
    url: str,
    identity: DeviceIdentity,
    *,
    timeout: aiohttp.ClientTimeout | None = None,
) -> None:
    await _create(http_session, url, {"name": identity.name, "location": identity.location}, timeout=timeout)


async def create_sensor(
    http_session: aiohttp.ClientSession,
    url: str,
    name: str,
    unit: str,
    *,
    timeout: aiohttp.ClientTimeout | None = None,
) -> None:
    await _create(http_session, url, {"name": name, "unit": unit}, timeout=timeout)


def _find(devices: list[DeviceIdentity], identity: DeviceIdentity) -> DeviceIdentity | None:
    return next((device for device in devices if device.matches(identity)), None)


async def ensure_device(
    http_session: aiohttp.ClientSession,
    url: str,
    identity: DeviceIdentity,
    *,
    timeout: aiohttp.ClientTimeout | None = None,
) -> DeviceIdentity:
    """Return *identity* with the id the API assigned to it.

    Creates the device once if it is not registered yet.
    """
    existing = _find(await fetch_devices(http_session, url, timeout=timeout), identity)
    if existing is None:
        _logger.info("Registering device name=%s location=%s", identity.name, identity.location)
        await create_device(http_session, url, identity, timeout=timeout)
        existing = _find(await fetch_devices(http_session, url, timeout=timeout), identity)
        if existing is None:
            raise RegistrationError(
                f"Device {identity.name!r} at {identity.location!r} still missing from {url} after creation"
            )

    if existing.id is None:
        raise RegistrationError(f"Device list from {url} has no id for {identity.name!r}")
    _logger.info("Device %s at %s has id %d", identity.name, identity.location, existing.id)
    return identity.model_copy(update={"id": existing.id})


def _sensor_ids(sensors: list[SensorInfo], wanted: dict[str, str], url: str) -> dict[str, int]:
    ids: dict[str, int] = {}
    for sensor in sensors:
        if sensor.name not in wanted or sensor.name in ids:
            continue
        if sensor.id is None:
            raise RegistrationError(f"Sensor list from {url} has no id for {sensor.name!r}")
        if sensor.unit and sensor.unit != wanted[sensor.name]:
            _logger.warning(
                "Sensor %s is registered with unit %r, readings are sent in %r",
                sensor.name,
                sensor.unit,
                wanted[sensor.name],
            )
        ids[sensor.name] = sensor.id
    return ids


async def ensure_sensors(
    http_session: aiohttp.ClientSession,
    url: str,
    wanted: Iterable[tuple[str, str]],
    *,
    timeout: aiohttp.ClientTimeout | None = None,
) -> dict[str, int]:
    """Return ``{sensor name: id}`` for every ``(name, unit)`` pair in *wanted*.

    Sensors are matched by name. Missing ones are created once each, then
    the list is fetched again.
    """
    units = dict(wanted)
    if not units:
        return {}
    ids = _sensor_ids(await fetch_sensors(http_session, url, timeout=timeout), units, url)
    missing = [name for name in units if name not in ids]
    if missing:
        for name in missing:
            _logger.info("Registering sensor name=%s unit=%s", name, units[name])
            await create_sensor(http_session, url, name, units[name], timeout=timeout)
        ids = _sensor_ids(await fetch_sensors(http_session, url, timeout=timeout), units, url)
        still_missing = [name for name in units if name not in ids]
        if still_missing:
            raise RegistrationError(f"Sensors {still_missing} still missing from {url} after creation")

    for name in units:
        _logger.debug("Sensor %s has id %d", name, ids[name])
    return ids


def catalog_sensors(tags: Iterable[str]) -> list[tuple[str, str]]:
    """``(name, unit)`` pairs of the catalog sensors published under *tags*."""
    return [
        (sensor_name(tag, kind), kind.unit)
        for tag in sorted(tags)
        for kind in SENSOR_CATALOG.get(tag, ())
    ]


class SensorDirectory:
    """Sensor name to id cache backed by the sensor registry endpoint.

    Catalog sensors are registered up front with :meth:`preload`. A reading
    from a sensor outside the catalog registers it on first sight.
    """

    def __init__(
        self,
        http_session: aiohttp.ClientSession,
        url: str,
        *,
        timeout: aiohttp.ClientTimeout | None = None,
    ) -> None:
        self._http = http_session
        self._url = url
        self._timeout = timeout
        self._ids: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def get(self, name: str) -> int | None:
        return self._ids.get(name)

    async def preload(self, wanted: Iterable[tuple[str, str]]) -> dict[str, int]:
        async with self._lock:
            self._ids.update(await ensure_sensors(self._http, self._url, wanted, timeout=self._timeout))
            return dict(self._ids)

    async def ensure(self, name: str, unit: str) -> int:
        """Return the id for *name*, registering the sensor if needed."""
        known = self._ids.get(name)
        if known is not None:
            return known
        async with self._lock:
            # Another task may have registered it while this one waited.
            if name not in self._ids:
                self._ids.update(await ensure_sensors(self._http, self._url, [(name, unit)], timeout=self._timeout))
            return self._ids[name]
