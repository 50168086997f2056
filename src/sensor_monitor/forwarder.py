"""Deliver forward records to the monitoring API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sensor_monitor._transport import AttemptOutcome, Transport
from sensor_monitor.config import RetryPolicy
from sensor_monitor.exceptions import ForwardRejectedError, ForwardTransientError
from sensor_monitor.models import ForwardRecord

_logger = logging.getLogger(__name__)


class Forwarder:
    """POSTs one record per request, retrying transient failures.

    The retry loop inspects each :class:`AttemptOutcome`:

    * 2xx: done.
    * 4xx: :class:`ForwardRejectedError` after exactly one attempt.
    * 5xx / network error: wait ``retry.delay_for(attempt)`` and try again,
      up to ``retry.max_attempts`` attempts in total, then
      :class:`ForwardTransientError`.

    Anything else (e.g. an unfollowed 3xx) is treated as a rejection.
    """

    def __init__(
        self,
        transport: Transport,
        url: str,
        *,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._url = url
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    @property
    def url(self) -> str:
        return self._url

    async def forward(self, record: ForwardRecord) -> int:
        """Send *record*. Returns the number of attempts it took."""
        body = record.to_wire()
        max_attempts = self._retry.max_attempts
        outcome = AttemptOutcome(error="not attempted")

        for attempt in range(1, max_attempts + 1):
            outcome = await self._transport.post_json(self._url, body)

            if outcome.ok:
                if attempt > 1:
                    _logger.info("Forwarded %s after %d attempts", record.reading.sensor_name, attempt)
                return attempt

            if not outcome.is_transient:
                raise ForwardRejectedError(
                    f"{self._url} rejected {record.reading.sensor_name}: {outcome.describe()}",
                    status_code=outcome.status,
                    attempts=attempt,
                    endpoint=self._url,
                )

            if attempt == max_attempts:
                break

            delay = self._retry.delay_for(attempt)
            _logger.warning(
                "Transient failure forwarding %s (attempt %d/%d): %s; retrying in %.2fs",
                record.reading.sensor_name,
                attempt,
                max_attempts,
                outcome.describe(),
                delay,
            )
            await self._sleep(delay)

        raise ForwardTransientError(
            f"Giving up on {record.reading.sensor_name} after {max_attempts} attempts: {outcome.describe()}",
            status_code=outcome.status,
            attempts=max_attempts,
            endpoint=self._url,
        )
