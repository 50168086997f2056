from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer


@dataclass
class FakeHemApi:
    """In-memory monitoring API: device and sensor registries plus measurements."""

    devices: list[dict[str, Any]] = field(default_factory=list)
    sensors: list[dict[str, Any]] = field(default_factory=list)
    measurements: list[dict[str, Any]] = field(default_factory=list)
    created_devices: list[dict[str, Any]] = field(default_factory=list)
    created_sensors: list[dict[str, Any]] = field(default_factory=list)
    list_status: int = 200
    list_delay: float = 0.0
    assign_ids: bool = True
    base_url: str = ""

    @property
    def sensor_ids(self) -> dict[str, int]:
        return {sensor["name"]: sensor["id"] for sensor in self.sensors}

    async def _listing(self, items: list[dict[str, Any]]) -> web.Response:
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.list_status != 200:
            return web.Response(status=self.list_status, text="boom")
        return web.json_response(items)

    async def list_devices(self, _request: web.Request) -> web.Response:
        return await self._listing(self.devices)

    async def create_device(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.created_devices.append(body)
        if self.assign_ids:
            self.devices.append({"id": len(self.devices) + 1, **body})
        return web.Response(status=201)

    async def list_sensors(self, _request: web.Request) -> web.Response:
        return await self._listing(self.sensors)

    async def create_sensor(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.created_sensors.append(body)
        if self.assign_ids:
            self.sensors.append({"id": len(self.sensors) + 1, **body})
        return web.Response(status=201)

    async def store_measurement(self, request: web.Request) -> web.Response:
        self.measurements.append(await request.json())
        return web.Response(status=201)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/devices", self.list_devices)
        app.router.add_post("/api/devices", self.create_device)
        app.router.add_get("/api/sensors", self.list_sensors)
        app.router.add_post("/api/sensors", self.create_sensor)
        app.router.add_post("/api/measurements", self.store_measurement)
        return app


@pytest_asyncio.fixture
async def hem_api() -> AsyncIterator[FakeHemApi]:
    api = FakeHemApi()
    server = TestServer(api.build_app())
    await server.start_server()
    api.base_url = str(server.make_url("/")).rstrip("/")
    try:
        yield api
    finally:
        await server.close()
