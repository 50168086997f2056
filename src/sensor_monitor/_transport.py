"""Single-attempt JSON POST over aiohttp.

Failures are reported as an :class:`AttemptOutcome` value rather than raised,
so callers can decide on retries by inspecting the result.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

_logger = logging.getLogger(__name__)

USER_AGENT = "sensor-monitor"


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one HTTP attempt.

    Exactly one of ``status`` (a response arrived) or ``error`` (no response:
    timeout, refused connection, DNS failure) is set.
    """

    status: int | None = None
    error: str | None = None
    body_excerpt: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500

    @property
    def is_transient(self) -> bool:
        return self.error is not None or (self.status is not None and self.status >= 500)

    def describe(self) -> str:
        if self.error is not None:
            return self.error
        if self.body_excerpt:
            return f"HTTP {self.status}: {self.body_excerpt}"
        return f"HTTP {self.status}"


class Transport(Protocol):
    """Structural transport interface used by the forwarder.

    Tests pass scripted doubles; production uses :class:`HttpTransport`.
    """

    async def post_json(self, url: str, body: Mapping[str, Any]) -> AttemptOutcome:
        ...


class HttpTransport:
    """POSTs JSON bodies with a shared aiohttp session."""

    def __init__(self, http_session: aiohttp.ClientSession, *, timeout: float = 10.0) -> None:
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def post_json(self, url: str, body: Mapping[str, Any]) -> AttemptOutcome:
        headers = {
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        data = json.dumps(body, separators=(",", ":"))

        _logger.debug("POST %s", url)

        try:
            async with self._http.post(url, data=data, headers=headers, timeout=self._timeout) as resp:
                if 200 <= resp.status < 300:
                    # The write endpoint's response body carries nothing we need.
                    return AttemptOutcome(status=resp.status)
                text = await resp.text()
                return AttemptOutcome(status=resp.status, body_excerpt=text[:200])
        except TimeoutError:
            return AttemptOutcome(error=f"Request to {url} timed out")
        except aiohttp.ClientError as exc:
            return AttemptOutcome(error=f"Request to {url} failed: {exc}")
