"""Per-message pipeline: decode, resolve, forward.

This is the failure boundary. Every per-message error is logged here with
enough context to diagnose it and the message (or the failing record) is
dropped. Nothing raised by a stage escapes :meth:`Pipeline.handle`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sensor_monitor._redact import payload_excerpt
from sensor_monitor.config import TagPolicy
from sensor_monitor.decoder import decode
from sensor_monitor.exceptions import (
    DecodeError,
    ForwardError,
    ForwardRejectedError,
    RegistrationError,
    ResolverError,
    UnrecognizedFieldError,
)
from sensor_monitor.forwarder import Forwarder
from sensor_monitor.models import DeviceIdentity, ForwardRecord, RawMessage
from sensor_monitor.registry import SensorDirectory
from sensor_monitor.resolver import resolve

_logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    messages: int = 0
    ignored_messages: int = 0
    dropped_messages: int = 0
    readings: int = 0
    rejected_fields: int = 0
    unknown_tags: int = 0
    unregistered_sensors: int = 0
    forwarded: int = 0
    forward_rejected: int = 0
    forward_failed: int = 0

    def summary(self) -> str:
        return (
            f"messages={self.messages} ignored={self.ignored_messages} dropped={self.dropped_messages} "
            f"readings={self.readings} rejected_fields={self.rejected_fields} unknown_tags={self.unknown_tags} "
            f"unregistered_sensors={self.unregistered_sensors} "
            f"forwarded={self.forwarded} forward_rejected={self.forward_rejected} "
            f"forward_failed={self.forward_failed}"
        )


class Pipeline:
    def __init__(
        self,
        identity: DeviceIdentity,
        policy: TagPolicy,
        forwarder: Forwarder,
        *,
        sensors: SensorDirectory | None = None,
        stats: PipelineStats | None = None,
    ) -> None:
        self._identity = identity
        self._policy = policy
        self._forwarder = forwarder
        self._sensors = sensors
        self.stats = stats or PipelineStats()

    @property
    def identity(self) -> DeviceIdentity:
        return self._identity

    async def handle(self, raw: RawMessage) -> int:
        """Process one message. Returns the number of records forwarded."""
        self.stats.messages += 1

        try:
            result = decode(raw)
        except UnrecognizedFieldError:
            self.stats.ignored_messages += 1
            _logger.debug("No sensor fields topic=%s payload=%s", raw.topic, payload_excerpt(raw.payload))
            return 0
        except DecodeError as exc:
            self.stats.dropped_messages += 1
            _logger.warning(
                "Dropping message stage=decode topic=%s error=%s payload=%s",
                raw.topic,
                exc,
                payload_excerpt(raw.payload),
            )
            return 0

        for rejected in result.rejected:
            self.stats.rejected_fields += 1
            _logger.warning("Skipping field stage=decode topic=%s error=%s", raw.topic, rejected)

        forwarded = 0
        for reading in result.readings:
            self.stats.readings += 1
            try:
                device = resolve(reading.sensor_tag, self._identity, self._policy)
            except ResolverError as exc:
                self.stats.unknown_tags += 1
                _logger.warning(
                    "Dropping reading stage=resolve topic=%s tag=%s error=%s",
                    raw.topic,
                    reading.sensor_tag,
                    exc,
                )
                continue

            sensor_id: int | None = None
            if self._sensors is not None:
                try:
                    sensor_id = await self._sensors.ensure(reading.sensor_name, reading.kind.unit)
                except RegistrationError as exc:
                    self.stats.unregistered_sensors += 1
                    _logger.error(
                        "Dropping reading stage=register topic=%s sensor=%s error=%s",
                        raw.topic,
                        reading.sensor_name,
                        exc,
                    )
                    continue

            record = ForwardRecord(reading=reading, device=device, sensor_id=sensor_id)
            try:
                await self._forwarder.forward(record)
            except ForwardRejectedError as exc:
                self.stats.forward_rejected += 1
                _logger.error(
                    "Dropping reading stage=forward topic=%s sensor=%s value=%s status=%s error=%s",
                    raw.topic,
                    reading.sensor_name,
                    reading.value,
                    exc.status_code,
                    exc,
                )
                continue
            except ForwardError as exc:
                self.stats.forward_failed += 1
                _logger.error(
                    "Dropping reading stage=forward topic=%s sensor=%s value=%s attempts=%d error=%s",
                    raw.topic,
                    reading.sensor_name,
                    reading.value,
                    exc.attempts,
                    exc,
                )
                continue

            forwarded += 1
            self.stats.forwarded += 1
            _logger.debug("Forwarded %s=%s", reading.sensor_name, reading.value)

        return forwarded
