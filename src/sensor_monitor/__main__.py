"""Command-line entry point: ``sensor-monitor`` / ``python -m sensor_monitor``.

Exit codes: ``0`` after a clean shutdown, ``2`` when startup fails
(configuration, broker connection, device registration).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from sensor_monitor import __version__
from sensor_monitor._mqtt import MqttSubscriber
from sensor_monitor._redact import redact_for_log
from sensor_monitor.config import MonitorConfig, _parse_tags
from sensor_monitor.exceptions import BrokerConnectionError, ConfigError, RegistrationError
from sensor_monitor.monitor import run_monitor

_LOG = logging.getLogger("sensor_monitor")

EXIT_STARTUP_FAILURE = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sensor-monitor",
        description="Forward MQTT sensor telemetry to the monitoring API. "
        "Flags override the corresponding environment variables.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--mqtt-host", help="MQTT broker host (env MQTT_HOST).")
    parser.add_argument("--mqtt-port", type=int, help="MQTT broker port (env MQTT_PORT).")
    parser.add_argument("--topic", help="Topic to subscribe to (env TOPIC).")
    parser.add_argument("--device-name", help="Device name (env DEVICE_NAME).")
    parser.add_argument("--device-location", help="Device location (env DEVICE_LOCATION).")
    parser.add_argument("--hemrs-base-url", dest="base_url", help="Monitoring API base URL (env HEMRS_BASE_URL).")
    parser.add_argument(
        "--strict-tags",
        action="store_true",
        default=None,
        help="Reject readings whose sensor tag is not accepted.",
    )
    parser.add_argument(
        "--accepted-tags",
        type=_parse_tags,
        help="Comma-separated sensor tags accepted in strict mode (default: DS18B20,DHT11).",
    )
    parser.add_argument(
        "--no-register",
        dest="register_device",
        action="store_false",
        default=None,
        help="Skip the startup device and sensor lookup; records are sent without ids.",
    )
    parser.add_argument("--max-in-flight", type=int, help="Messages processed concurrently.")
    parser.add_argument("--retry-max-attempts", type=int, help="Attempts per record for transient failures.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level.",
    )
    return parser


async def _run(config: MonitorConfig) -> int:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    subscriber = MqttSubscriber(config, loop=loop)
    try:
        await loop.run_in_executor(None, subscriber.start)
    except BrokerConnectionError as exc:
        _LOG.error("Startup failed: %s", exc)
        return EXIT_STARTUP_FAILURE

    try:
        await run_monitor(config, subscriber, stop=stop)
    except RegistrationError as exc:
        _LOG.error("Startup failed: %s", exc)
        return EXIT_STARTUP_FAILURE
    finally:
        subscriber.close()
        await loop.run_in_executor(None, subscriber.stop)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = MonitorConfig.from_env(
            mqtt_host=args.mqtt_host,
            mqtt_port=args.mqtt_port,
            topic=args.topic,
            device_name=args.device_name,
            device_location=args.device_location,
            base_url=args.base_url,
            strict_tags=args.strict_tags,
            accepted_tags=args.accepted_tags,
            register_device=args.register_device,
            max_in_flight=args.max_in_flight,
            retry_max_attempts=args.retry_max_attempts,
        )
    except ConfigError as exc:
        print(f"sensor-monitor: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_STARTUP_FAILURE

    _LOG.info("Starting sensor-monitor %s with %s", __version__, redact_for_log(config))
    try:
        return asyncio.run(_run(config))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
