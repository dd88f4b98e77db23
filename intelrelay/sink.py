"""
sink.py — Delivery of intel records to the intel server.

The dispatcher talks to any object with an ``async deliver(record) ->
bool``.  :class:`HttpSink` is the production sink: a JSON POST to
``<server>/api/intel`` through a ``requests`` session whose adapter retries
transient failures with exponential backoff.  The blocking call runs in a
worker thread and is bounded by ``timeout``; a timed-out or failed
delivery returns ``False`` and is never retried by the engine itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from intelrelay.classifier import IntelClassifier
from intelrelay.errors import SinkFailure
from intelrelay.events import Record

logger = logging.getLogger(__name__)

USER_AGENT = "intel-relay/1.0"
INTEL_PATH = "/api/intel"
HEALTH_PATH = "/health"


class Sink(Protocol):
    async def deliver(self, record: Record) -> bool:
        ...


class HttpSink:
    """POSTs records to the intel server.

    Parameters:
        server_url: Base URL of the intel server.
        api_key:    Value for the ``X-API-Key`` header.
        classifier: Supplies the confidence/source fields of the payload.
        timeout:    Seconds allowed for one delivery, retries included.
        retries:    Transport-level retries for connection errors and 5xx.
        backoff:    urllib3 backoff factor between retries.
        session:    Pre-built session (tests inject one).
    """

    def __init__(
        self,
        server_url: str,
        api_key: str = "",
        classifier: IntelClassifier | None = None,
        timeout: float = 10.0,
        retries: int = 2,
        backoff: float = 0.5,
        session: requests.Session | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.classifier = classifier or IntelClassifier()
        self.timeout = timeout
        self._session = session or self._build_session(retries, backoff)

    @staticmethod
    def _build_session(retries: int, backoff: float) -> requests.Session:
        retry = Retry(
            total=retries,
            backoff_factor=backoff,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "POST"}),
            raise_on_status=False,
        )
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def payload(self, record: Record) -> dict[str, Any]:
        """Build the JSON body the intel server expects."""
        return {
            "system": record.channel_key,
            "intel": record.message,
            "pilot": record.author,
            "timestamp": record.timestamp.isoformat().replace("+00:00", "Z"),
            "confidence": self.classifier.confidence(record.message, record.channel_key),
            "source": self.classifier.source(record.channel_key),
        }

    def post(self, payload: dict[str, Any]) -> None:
        """Blocking POST of one payload.

        Raises:
            SinkFailure: On transport errors or a non-2xx response.
        """
        url = f"{self.server_url}{INTEL_PATH}"
        try:
            response = self._session.post(
                url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise SinkFailure(f"POST {url} failed: {exc}") from exc
        if not response.ok:
            raise SinkFailure(f"Server responded with status {response.status_code}")

    async def deliver(self, record: Record) -> bool:
        payload = self.payload(record)
        try:
            await asyncio.wait_for(asyncio.to_thread(self.post, payload), self.timeout)
        except SinkFailure as exc:
            logger.warning("Failed to submit intel from %s: %s", record.channel_key, exc)
            return False
        except asyncio.TimeoutError:
            logger.warning(
                "Submitting intel from %s timed out after %.1fs",
                record.channel_key, self.timeout,
            )
            return False
        logger.info("Intel sent: %s - %.50s", record.channel_key, record.message)
        return True

    # ------------------------------------------------------------------
    # Connection test
    # ------------------------------------------------------------------

    def check_health(self) -> bool:
        """One-shot GET of the health endpoint."""
        url = f"{self.server_url}{HEALTH_PATH}"
        try:
            response = self._session.get(
                url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.error("Connection test failed: %s", exc)
            return False
        if not response.ok:
            logger.error("Connection test failed: status %s", response.status_code)
            return False
        try:
            info = response.json()
        except ValueError:
            info = {}
        logger.info(
            "Server connection OK: %s v%s",
            info.get("service", "unknown"), info.get("version", "?"),
        )
        return True

    def close(self) -> None:
        self._session.close()


class LoggingSink:
    """Dry-run sink: logs each record instead of sending it."""

    def __init__(self) -> None:
        self.count = 0

    async def deliver(self, record: Record) -> bool:
        self.count += 1
        logger.info(
            "[dry-run] %s %s > %s",
            record.channel_key, record.author, record.message,
        )
        return True
