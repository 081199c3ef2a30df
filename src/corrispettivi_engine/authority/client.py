"""Outbound client for the tax authority's daily report endpoint.

The authority either answers a submission with an outcome right away or
accepts it for later processing, in which case the outcome is fetched
afterwards with ``query_outcome``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

from corrispettivi_engine.common.exceptions import TransportError

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
REJECTED = "rejected"


@dataclass
class Outcome:
    """Authority verdict on one daily report."""

    status: str
    code: str = ""
    description: str = ""
    received_at: Optional[datetime] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Outcome":
        status = str(data.get("status", "")).lower()
        if status not in (ACCEPTED, REJECTED):
            raise ValueError(f"Unknown outcome status: {data.get('status')!r}")
        received_at = data.get("received_at")
        return cls(
            status=status,
            code=str(data.get("code", "")),
            description=str(data.get("description", "")),
            received_at=datetime.fromisoformat(received_at) if received_at else None,
            raw=data,
        )


class AuthorityClient(ABC):
    """Every implementation provides the full contract."""

    @abstractmethod
    async def send_report(self, report: dict[str, Any]) -> Optional[Outcome]:
        """Submit a daily report. Returns the outcome if it is immediate."""

    @abstractmethod
    async def query_outcome(
        self,
        vat_number: str,
        device_id: str,
        reference_date: str,
    ) -> Optional[Outcome]:
        """Fetch a delayed outcome, or None if there is none yet."""

    async def close(self) -> None:
        return None


class HttpAuthorityClient(AuthorityClient):
    """JSON-over-HTTP authority client with explicit timeouts."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Optional[httpx.Response]:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Authority request {method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Authority request {method} {path} failed: {e.__class__.__name__}"
            ) from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise TransportError(
                f"Authority returned {resp.status_code} for {method} {path}",
                status_code=resp.status_code,
            )
        return resp

    @staticmethod
    def _outcome_of(resp: httpx.Response) -> Optional[Outcome]:
        if resp.status_code == 202 or not resp.content:
            return None
        try:
            data = resp.json()
            outcome = data.get("outcome")
            return Outcome.from_dict(outcome) if outcome else None
        except (ValueError, AttributeError) as e:
            raise TransportError(f"Unreadable authority response: {e}") from e

    async def send_report(self, report: dict[str, Any]) -> Optional[Outcome]:
        resp = await self._request("POST", "/daily-reports", json=report)
        if resp is None:
            raise TransportError("Authority endpoint not found", status_code=404)
        outcome = self._outcome_of(resp)
        logger.info(
            "Daily report %s/%s sent to authority, outcome %s",
            report.get("device_id"), report.get("reference_date"),
            outcome.status if outcome else "deferred",
        )
        return outcome

    async def query_outcome(
        self,
        vat_number: str,
        device_id: str,
        reference_date: str,
    ) -> Optional[Outcome]:
        resp = await self._request(
            "GET", f"/daily-reports/{vat_number}/{device_id}/{reference_date}/outcome",
        )
        if resp is None:
            return None
        return self._outcome_of(resp)

    async def close(self) -> None:
        await self._http.aclose()
