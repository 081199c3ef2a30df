"""
PELClient SDK: sync client used by an emission device to reach its
elaboration point.

Every call carries an explicit timeout. A timed-out call counts the same as
any other failed call: the caller decides whether to queue and retry later.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from corrispettivi_engine.common.exceptions import TransportError

logger = logging.getLogger(__name__)


@dataclass
class SessionSeed:
    """Seed handed out by the elaboration point when a session opens."""

    session_id: str
    seed: str


@dataclass
class TransmissionResult:
    """Result of a push to the elaboration point."""

    success: bool
    message_id: Optional[str] = None
    status: str = ""
    error: str = ""
    data: Optional[dict[str, Any]] = None


class PELClient:
    """
    Synchronous HTTP client for the elaboration point ingestion API.

    Retries are off by default (``max_retries=1``): the session manager owns
    retry policy through its unsynced backlog.
    """

    def __init__(
        self,
        server_url: str = "http://localhost:4000",
        timeout: float = 10.0,
        max_retries: int = 1,
        retry_backoff_base: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff_base = retry_backoff_base
        self._http = httpx.Client(
            base_url=self.server_url,
            timeout=timeout,
            transport=transport,
        )

    def _request(
        self,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Central HTTP method with bounded retry.

        Retries on timeouts, connection errors, 5xx and 429. Other 4xx fail
        immediately. Raises TransportError once attempts are exhausted.
        """
        last_error = ""
        last_status: Optional[int] = None
        for attempt in range(self.max_retries):
            try:
                resp = self._http.request(method, path, **kwargs)
                if resp.status_code >= 500 or resp.status_code == 429:
                    last_error = f"HTTP {resp.status_code}"
                    last_status = resp.status_code
                elif resp.status_code >= 400:
                    raise TransportError(
                        f"PEL rejected request: {resp.status_code} {resp.text[:200]}",
                        status_code=resp.status_code,
                    )
                else:
                    return resp.json()
            except httpx.TimeoutException:
                last_error = "timeout"
                last_status = None
            except httpx.HTTPError as e:
                last_error = str(e) or e.__class__.__name__
                last_status = None
            except json.JSONDecodeError as e:
                raise TransportError("Invalid JSON response from PEL") from e

            logger.debug(
                "PEL request %s %s attempt %d failed: %s",
                method, path, attempt + 1, last_error,
            )
            if attempt < self.max_retries - 1:
                time.sleep(self.retry_backoff_base * (2 ** attempt))

        raise TransportError(
            f"PEL request {method} {path} failed after {self.max_retries} attempt(s): {last_error}",
            status_code=last_status,
        )

    def _push(self, path: str, body: dict[str, Any]) -> TransmissionResult:
        try:
            data = self._request("POST", path, json=body)
        except TransportError as e:
            return TransmissionResult(success=False, error=e.message)
        return TransmissionResult(
            success=True,
            message_id=data.get("message_id"),
            status=data.get("status", ""),
            data=data,
        )

    # ── Session ──

    def get_session_seed(self, device_id: str = "") -> SessionSeed:
        """Request a session seed. Raises TransportError when unreachable."""
        params = {"device_id": device_id} if device_id else None
        data = self._request("GET", "/api/session/seed", params=params)
        return SessionSeed(session_id=data["session_id"], seed=data["seed"])

    # ── Pushes ──

    def send_receipt(self, receipt: dict[str, Any]) -> TransmissionResult:
        return self._push("/api/document", receipt)

    def send_journal(self, journal: dict[str, Any]) -> TransmissionResult:
        return self._push("/api/journal", journal)

    def report_anomaly(self, anomaly: dict[str, Any]) -> TransmissionResult:
        return self._push("/api/anomaly", anomaly)

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health")

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "PELClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
