"""Runtime configuration for sensor_monitor."""

from __future__ import annotations

import dataclasses
import os
from typing import Any
from urllib.parse import urlsplit

from sensor_monitor.exceptions import ConfigError

DEFAULT_ACCEPTED_TAGS: frozenset[str] = frozenset({"DS18B20", "DHT11"})


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env_key: str, value: str, cast: type[int] | type[float]) -> int | float:
    try:
        return cast(value)
    except ValueError as exc:
        raise ConfigError(f"{env_key} must be a number, got {value!r}") from exc


def _parse_tags(value: str) -> frozenset[str]:
    return frozenset(tag.strip() for tag in value.split(",") if tag.strip())


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient forward failures.

    Parameters
    ----------
    max_attempts : int
        Total attempts per record, including the first one.
    base_delay : float
        Delay in seconds before the second attempt. Doubles per attempt.
    max_delay : float
        Ceiling for a single delay.
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclasses.dataclass(frozen=True)
class TagPolicy:
    """Which sensor tags the deployment accepts.

    In permissive mode (the default) every tag resolves to the configured
    device. In strict mode tags outside ``accepted_tags`` are rejected.
    """

    strict: bool = False
    accepted_tags: frozenset[str] = DEFAULT_ACCEPTED_TAGS


@dataclasses.dataclass(frozen=True)
class MonitorConfig:
    """Process configuration, loaded once at startup.

    Parameters
    ----------
    device_name : str
        Name attached to every forwarded reading.
    device_location : str
        Physical location attached to every forwarded reading.
    base_url : str
        Monitoring API base URL, e.g. ``http://hemrs:65534``.
    topic : str
        MQTT topic the device publishes sensor telemetry on.
    mqtt_host : str
        Broker host name.
    mqtt_port : int
        Broker port.
    mqtt_username, mqtt_password : str or None
        Optional broker credentials.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_client_id : str or None
        Client id; defaults to ``sensor_monitor_<hostname>``.
    measurements_path : str
        Path of the measurement write endpoint.
    devices_path : str
        Path of the device registry endpoint.
    sensors_path : str
        Path of the sensor registry endpoint.
    register_device : bool
        Look up (or create) the device and its sensors at startup to obtain
        their ids.
    request_timeout : float
        Total timeout in seconds for one HTTP attempt.
    max_in_flight : int
        Messages processed concurrently. ``1`` gives strictly sequential handling.
    queue_size : int
        Messages buffered between the MQTT thread and the pipeline.
    shutdown_grace : float
        Seconds in-flight work may take to finish after a stop request.
    tags : TagPolicy
        Sensor tag acceptance policy.
    retry : RetryPolicy
        Backoff parameters for transient forward failures.
    """

    device_name: str
    device_location: str
    base_url: str
    topic: str
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_keepalive: int = 5
    mqtt_client_id: str | None = None
    measurements_path: str = "/api/measurements"
    devices_path: str = "/api/devices"
    sensors_path: str = "/api/sensors"
    register_device: bool = True
    request_timeout: float = 10.0
    max_in_flight: int = 4
    queue_size: int = 100
    shutdown_grace: float = 5.0
    tags: TagPolicy = dataclasses.field(default_factory=TagPolicy)
    retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)

    @property
    def measurements_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.measurements_path}"

    @property
    def devices_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.devices_path}"

    @property
    def sensors_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.sensors_path}"

    def validate(self) -> MonitorConfig:
        """Check value ranges. Returns ``self`` so calls can be chained."""
        for name in ("device_name", "device_location", "topic", "mqtt_host"):
            if not str(getattr(self, name)).strip():
                raise ConfigError(f"{name} must be non-empty")
        parts = urlsplit(self.base_url)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ConfigError(f"base_url must be an http(s) URL, got {self.base_url!r}")
        if not 0 < self.mqtt_port < 65536:
            raise ConfigError(f"mqtt_port out of range: {self.mqtt_port}")
        if self.max_in_flight < 1 or self.queue_size < 1:
            raise ConfigError("max_in_flight and queue_size must be at least 1")
        if self.request_timeout <= 0 or self.shutdown_grace < 0:
            raise ConfigError("request_timeout must be positive and shutdown_grace non-negative")
        if self.retry.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        if self.retry.base_delay < 0 or self.retry.max_delay < self.retry.base_delay:
            raise ConfigError("retry delays must satisfy 0 <= base_delay <= max_delay")
        if self.tags.strict and not self.tags.accepted_tags:
            raise ConfigError("strict tag policy needs at least one accepted tag")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> MonitorConfig:
        """Create configuration from environment variables.

        Reads the variables used by the container deployment (``MQTT_HOST``,
        ``TOPIC``, ``DEVICE_NAME``, ``DEVICE_LOCATION``, ``HEMRS_BASE_URL``)
        and optional ``SENSOR_MONITOR_*`` tuning variables. Explicit keyword
        arguments override environment values; ``None`` overrides are ignored
        so CLI flags that were not given fall through to the environment.

        Raises
        ------
        ConfigError
            A required value is missing or a value cannot be parsed.
        """
        env = os.environ
        overrides = {key: value for key, value in overrides.items() if value is not None}

        _ENV_STR_MAP = {
            "DEVICE_NAME": "device_name",
            "DEVICE_LOCATION": "device_location",
            "HEMRS_BASE_URL": "base_url",
            "TOPIC": "topic",
            "MQTT_HOST": "mqtt_host",
            "MQTT_USERNAME": "mqtt_username",
            "MQTT_PASSWORD": "mqtt_password",
            "SENSOR_MONITOR_CLIENT_ID": "mqtt_client_id",
            "SENSOR_MONITOR_MEASUREMENTS_PATH": "measurements_path",
            "SENSOR_MONITOR_DEVICES_PATH": "devices_path",
            "SENSOR_MONITOR_SENSORS_PATH": "sensors_path",
        }
        _ENV_NUMBER_MAP: dict[str, tuple[str, type[int] | type[float]]] = {
            "MQTT_PORT": ("mqtt_port", int),
            "SENSOR_MONITOR_KEEPALIVE": ("mqtt_keepalive", int),
            "SENSOR_MONITOR_REQUEST_TIMEOUT": ("request_timeout", float),
            "SENSOR_MONITOR_MAX_IN_FLIGHT": ("max_in_flight", int),
            "SENSOR_MONITOR_QUEUE_SIZE": ("queue_size", int),
            "SENSOR_MONITOR_SHUTDOWN_GRACE": ("shutdown_grace", float),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val
        for env_key, (field_name, cast) in _ENV_NUMBER_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_number(env_key, val, cast)

        if "register_device" not in overrides:
            config_kwargs["register_device"] = _env_bool(env.get("SENSOR_MONITOR_REGISTER_DEVICE"), True)

        # Nested policies may be passed whole or as loose keyword arguments.
        tags = overrides.pop("tags", None)
        if not isinstance(tags, TagPolicy):
            strict = overrides.pop("strict_tags", None)
            accepted = overrides.pop("accepted_tags", None)
            if strict is None:
                strict = _env_bool(env.get("SENSOR_MONITOR_STRICT_TAGS"), False)
            if accepted is None:
                accepted_env = env.get("SENSOR_MONITOR_ACCEPTED_TAGS")
                accepted = _parse_tags(accepted_env) if accepted_env is not None else DEFAULT_ACCEPTED_TAGS
            tags = TagPolicy(strict=bool(strict), accepted_tags=frozenset(accepted))
        config_kwargs["tags"] = tags

        retry = overrides.pop("retry", None)
        if not isinstance(retry, RetryPolicy):
            retry_kwargs: dict[str, Any] = {}
            _ENV_RETRY_MAP: dict[str, tuple[str, type[int] | type[float]]] = {
                "SENSOR_MONITOR_RETRY_MAX_ATTEMPTS": ("max_attempts", int),
                "SENSOR_MONITOR_RETRY_BASE_DELAY": ("base_delay", float),
                "SENSOR_MONITOR_RETRY_MAX_DELAY": ("max_delay", float),
            }
            for env_key, (field_name, cast) in _ENV_RETRY_MAP.items():
                explicit = overrides.pop(f"retry_{field_name}", None)
                if explicit is not None:
                    retry_kwargs[field_name] = explicit
                    continue
                val = env.get(env_key)
                if val is not None:
                    retry_kwargs[field_name] = _env_number(env_key, val, cast)
            retry = RetryPolicy(**retry_kwargs)
        config_kwargs["retry"] = retry

        config_kwargs.update(overrides)

        missing = [
            name for name in ("device_name", "device_location", "base_url", "topic") if not config_kwargs.get(name)
        ]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

        try:
            config = cls(**config_kwargs)
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc
        return config.validate()
