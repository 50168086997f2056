"""Message sources: an asyncio queue, and a paho-mqtt subscriber feeding one."""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import socket
import threading
from typing import Any, Protocol, cast

import paho.mqtt.client as mqtt

from sensor_monitor.config import MonitorConfig
from sensor_monitor.exceptions import BrokerConnectionError
from sensor_monitor.models import RawMessage


class MessageSource(Protocol):
    """Where the run loop gets messages from.

    ``receive`` suspends until a message arrives and returns ``None`` once
    the source is closed and drained.
    """

    async def receive(self) -> RawMessage | None:
        ...


class QueueSource:
    """Bounded asyncio queue implementing :class:`MessageSource`."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[RawMessage | None] = asyncio.Queue(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def put(self, message: RawMessage) -> None:
        """Enqueue *message*, waiting for room when the queue is full."""
        if self._closed:
            return
        await self._queue.put(message)

    def close(self) -> None:
        """Stop accepting messages; ``receive`` returns ``None`` once drained."""
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)

    async def receive(self) -> RawMessage | None:
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()


def default_client_id() -> str:
    return f"sensor_monitor_{socket.gethostname()}"


class MqttSubscriber(QueueSource):
    """Threaded paho-mqtt client that hands messages to an asyncio loop.

    The paho network thread blocks while the queue is full, so a saturated
    pipeline stops reading from the broker instead of buffering without
    bound.
    """

    def __init__(
        self,
        config: MonitorConfig,
        *,
        loop: asyncio.AbstractEventLoop,
        connect_timeout: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(maxsize=config.queue_size)
        self._config = config
        self._loop = loop
        self._connect_timeout = connect_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = threading.Event()
        self._connect_failure: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Connect, subscribe and start the network thread.

        Blocks until the broker acknowledges the connection. Run it in an
        executor from async code.

        Raises
        ------
        BrokerConnectionError
            The broker is unreachable or refused the connection.
        """
        config = self._config
        client_id = config.mqtt_client_id or default_client_id()
        self._logger.info(
            "Connecting to MQTT broker host=%s port=%s topic=%s client_id=%s",
            config.mqtt_host,
            config.mqtt_port,
            config.topic,
            client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if config.mqtt_username:
            client.username_pw_set(config.mqtt_username, config.mqtt_password)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                self._connect_failure = str(reason_code)
                self._connected.set()
                return
            self._logger.info("MQTT connected, subscribing topic=%s", config.topic)
            # Subscribing on every connect restores the subscription after reconnects.
            c.subscribe(config.topic, qos=0)
            self._connect_failure = None
            self._connected.set()

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                self._hand_over(RawMessage(topic=msg.topic, payload=bytes(msg.payload)))
            except Exception:
                self._logger.warning("MQTT message hand-over failed topic=%s", msg.topic, exc_info=True)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.warning("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(config.mqtt_host, config.mqtt_port, keepalive=config.mqtt_keepalive)
        except OSError as exc:
            raise BrokerConnectionError(
                f"Cannot reach MQTT broker {config.mqtt_host}:{config.mqtt_port}: {exc}"
            ) from exc

        self._client = client
        self._running = True
        client.loop_start()

        if not self._connected.wait(self._connect_timeout):
            self.stop()
            raise BrokerConnectionError(
                f"No CONNACK from {config.mqtt_host}:{config.mqtt_port} within {self._connect_timeout}s"
            )
        if self._connect_failure is not None:
            self.stop()
            raise BrokerConnectionError(
                f"MQTT broker {config.mqtt_host}:{config.mqtt_port} refused connection: {self._connect_failure}"
            )

    def _hand_over(self, message: RawMessage) -> None:
        """Queue *message* from the paho thread, blocking while the queue is full."""
        future = asyncio.run_coroutine_threadsafe(self.put(message), self._loop)
        while True:
            try:
                future.result(timeout=1.0)
                return
            except concurrent.futures.TimeoutError:
                if not self._running:
                    future.cancel()
                    self._logger.debug("Dropping message on %s during shutdown", message.topic)
                    return

    def stop(self) -> None:
        """Disconnect and stop the network thread."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
