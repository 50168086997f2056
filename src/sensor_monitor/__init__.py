"""sensor_monitor - MQTT to HTTP bridge for environmental sensor telemetry."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("sensor-monitor")
except PackageNotFoundError:
    __version__ = "0+local"

from sensor_monitor.config import MonitorConfig, RetryPolicy, TagPolicy
from sensor_monitor.decoder import DecodeResult, decode
from sensor_monitor.exceptions import (
    BrokerConnectionError,
    ConfigError,
    DecodeError,
    ForwardError,
    ForwardRejectedError,
    ForwardTransientError,
    MalformedPayloadError,
    OutOfRangeError,
    RegistrationError,
    ResolverError,
    SensorMonitorError,
    UnknownTagError,
    UnrecognizedFieldError,
)
from sensor_monitor.forwarder import Forwarder
from sensor_monitor.models import DeviceIdentity, ForwardRecord, RawMessage, SensorInfo, SensorKind, SensorReading
from sensor_monitor.monitor import run_monitor
from sensor_monitor.pipeline import Pipeline, PipelineStats
from sensor_monitor.resolver import resolve

__all__ = [
    "__version__",
    "BrokerConnectionError",
    "ConfigError",
    "DecodeError",
    "DecodeResult",
    "DeviceIdentity",
    "ForwardError",
    "ForwardRecord",
    "ForwardRejectedError",
    "ForwardTransientError",
    "Forwarder",
    "MalformedPayloadError",
    "MonitorConfig",
    "OutOfRangeError",
    "Pipeline",
    "PipelineStats",
    "RawMessage",
    "RegistrationError",
    "ResolverError",
    "RetryPolicy",
    "SensorInfo",
    "SensorKind",
    "SensorMonitorError",
    "SensorReading",
    "TagPolicy",
    "UnknownTagError",
    "UnrecognizedFieldError",
    "decode",
    "resolve",
    "run_monitor",
]
