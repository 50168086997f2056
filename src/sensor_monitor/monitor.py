"""The run loop tying a message source to the pipeline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable

import aiohttp

from sensor_monitor._mqtt import MessageSource
from sensor_monitor._transport import HttpTransport, Transport
from sensor_monitor.config import MonitorConfig
from sensor_monitor.forwarder import Forwarder
from sensor_monitor.models import DeviceIdentity, RawMessage
from sensor_monitor.pipeline import Pipeline, PipelineStats
from sensor_monitor.registry import SensorDirectory, catalog_sensors, ensure_device

_logger = logging.getLogger(__name__)


async def run_monitor(
    config: MonitorConfig,
    source: MessageSource,
    *,
    http_session: aiohttp.ClientSession | None = None,
    transport: Transport | None = None,
    stop: asyncio.Event | None = None,
) -> PipelineStats:
    """Process messages from *source* until it closes or *stop* is set.

    Registers the device and its catalog sensors first when
    ``config.register_device`` is on. A
    :class:`~sensor_monitor.exceptions.RegistrationError` from that step
    propagates, since the process cannot do useful work without it. After
    startup no per-message failure ends the loop.
    """
    owns_session = http_session is None
    if http_session is None:
        http_session = aiohttp.ClientSession()
    try:
        identity = DeviceIdentity(name=config.device_name, location=config.device_location)
        sensors: SensorDirectory | None = None
        if config.register_device:
            timeout = aiohttp.ClientTimeout(total=config.request_timeout)
            identity = await ensure_device(http_session, config.devices_url, identity, timeout=timeout)
            sensors = SensorDirectory(http_session, config.sensors_url, timeout=timeout)
            await sensors.preload(catalog_sensors(config.tags.accepted_tags))

        forwarder = Forwarder(
            transport or HttpTransport(http_session, timeout=config.request_timeout),
            config.measurements_url,
            retry=config.retry,
        )
        pipeline = Pipeline(identity, config.tags, forwarder, sensors=sensors)
        _logger.info(
            "Forwarding %s readings for device=%s location=%s to %s",
            config.topic,
            identity.name,
            identity.location,
            forwarder.url,
        )
        await _consume(source, pipeline, config, stop or asyncio.Event())
        return pipeline.stats
    finally:
        if owns_session:
            await http_session.close()


async def _until_stopped(
    awaitable: Awaitable[object],
    stop_wait: asyncio.Future[object],
) -> asyncio.Future[object] | None:
    """Await *awaitable* unless *stop_wait* finishes first (then cancel it)."""
    pending = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({pending, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
    if pending in done:
        return pending
    pending.cancel()
    return None


async def _consume(
    source: MessageSource,
    pipeline: Pipeline,
    config: MonitorConfig,
    stop: asyncio.Event,
) -> None:
    slots = asyncio.Semaphore(config.max_in_flight)
    in_flight: set[asyncio.Task[int]] = set()
    stop_wait: asyncio.Future[object] = asyncio.ensure_future(stop.wait())

    try:
        while not stop.is_set():
            # A free slot is required before receiving: saturation blocks the subscriber.
            if await _until_stopped(slots.acquire(), stop_wait) is None:
                break
            received = await _until_stopped(source.receive(), stop_wait)
            message = received.result() if received is not None else None
            if message is None:
                slots.release()
                break

            task = asyncio.create_task(_process(pipeline, message, slots))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)
    finally:
        stop_wait.cancel()
        await _drain(set(in_flight), config.shutdown_grace)
        _logger.info("Pipeline stopped: %s", pipeline.stats.summary())


async def _process(pipeline: Pipeline, message: RawMessage, slots: asyncio.Semaphore) -> int:
    try:
        return await pipeline.handle(message)
    except Exception:
        _logger.exception("Unexpected error handling message on %s", message.topic)
        return 0
    finally:
        slots.release()


async def _drain(tasks: set[asyncio.Task[int]], grace: float) -> None:
    """Give in-flight work *grace* seconds, then cancel what is left."""
    if not tasks:
        return
    _logger.debug("Waiting up to %.1fs for %d in-flight messages", grace, len(tasks))
    _done, pending = await asyncio.wait(tasks, timeout=grace)
    if not pending:
        return
    _logger.warning("Abandoning %d in-flight messages after %.1fs grace period", len(pending), grace)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
