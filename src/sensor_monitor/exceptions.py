"""Custom exception hierarchy for sensor_monitor."""

from __future__ import annotations


class SensorMonitorError(Exception):
    """Base exception for all sensor_monitor errors."""


class ConfigError(SensorMonitorError):
    """Invalid or missing configuration."""


class BrokerConnectionError(SensorMonitorError):
    """Initial connection to the MQTT broker failed."""


class RegistrationError(SensorMonitorError):
    """Device lookup/creation against the monitoring API failed at startup."""


class DecodeError(SensorMonitorError):
    """Inbound payload could not be turned into sensor readings."""


class MalformedPayloadError(DecodeError):
    """Payload is not the expected JSON object, or a field is not numeric."""


class UnrecognizedFieldError(DecodeError):
    """Payload carries no known measurement field.

    Not an operational failure: the device also publishes telemetry that
    contains no sensor block. The pipeline treats it as zero readings.
    """


class OutOfRangeError(DecodeError):
    """A measurement parsed but is non-finite or physically implausible."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "",
        value: float | None = None,
        sensor_tag: str = "",
    ) -> None:
        self.kind = kind
        self.value = value
        self.sensor_tag = sensor_tag
        super().__init__(message)


class ResolverError(SensorMonitorError):
    """A reading could not be attached to a device identity."""


class UnknownTagError(ResolverError):
    """Strict tag policy rejected a sensor tag."""

    def __init__(self, message: str, *, sensor_tag: str = "") -> None:
        self.sensor_tag = sensor_tag
        super().__init__(message)


class ForwardError(SensorMonitorError):
    """A record could not be delivered to the monitoring API."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        attempts: int = 0,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.attempts = attempts
        self.endpoint = endpoint
        super().__init__(message)


class ForwardRejectedError(ForwardError):
    """The API refused the record (4xx). Retrying would fail the same way."""


class ForwardTransientError(ForwardError):
    """Server or network failures persisted past the retry budget.

    The record is dropped; there is no durable queue.
    """
