"""Outcome reconciliation for daily reports sent without an immediate outcome.

Pending report keys are polled on a fixed interval. A key leaves the
pending set when an outcome shows up, either recorded on the report
(manually or by an earlier tick) or returned by the authority. A key that
stays without outcome for ``outcome_max_retries`` polls is given up on:
the report is marked ``unresolved``, an anomaly is recorded and the key is
kept in ``unresolved`` for inspection.
"""

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select

from corrispettivi_engine.aggregation.engine import (
    ACCEPTED,
    PENDING,
    REJECTED,
    UNRESOLVED,
    ReportKey,
    apply_outcome,
    get_report,
)
from corrispettivi_engine.aggregation.models import DailyReportModel
from corrispettivi_engine.anomaly.service import OUTCOME_UNRESOLVED, AnomalyService
from corrispettivi_engine.authority.client import AuthorityClient
from corrispettivi_engine.common.config import CorrispettiviSettings
from corrispettivi_engine.common.exceptions import TransportError
from corrispettivi_engine.common.scheduling import PeriodicTask

if TYPE_CHECKING:
    from corrispettivi_engine.common.database import DatabaseManager

logger = logging.getLogger(__name__)


class OutcomePoller:
    def __init__(
        self,
        settings: CorrispettiviSettings,
        authority: AuthorityClient,
        db: Optional["DatabaseManager"] = None,
        anomaly_service: Optional[AnomalyService] = None,
    ):
        self.settings = settings
        self.authority = authority
        self.anomaly_service = anomaly_service
        self.max_retries = settings.outcome_max_retries
        self._db = db
        self._pending: dict[ReportKey, int] = {}
        self._unresolved: list[ReportKey] = []
        self._timer = PeriodicTask(
            "outcome poller", settings.outcome_poll_interval, self.poll_once,
        )

    def _get_db(self) -> "DatabaseManager":
        if self._db is None:
            from corrispettivi_engine.deps import get_db
            self._db = get_db()
        return self._db

    @property
    def pending(self) -> dict[ReportKey, int]:
        """Pending keys with their retry counters."""
        return dict(self._pending)

    @property
    def unresolved(self) -> list[ReportKey]:
        return list(self._unresolved)

    @property
    def running(self) -> bool:
        return self._timer.running

    def register(self, key: ReportKey) -> None:
        if key not in self._pending:
            self._pending[key] = 0
            logger.info("Awaiting outcome for %s/%s/%s", *key)

    def start(self) -> None:
        self._timer.start()

    async def stop(self) -> None:
        await self._timer.stop()

    async def restore_pending(self) -> int:
        """Register every report still waiting for an outcome."""
        async with self._get_db().get_session() as session:
            result = await session.execute(
                select(
                    DailyReportModel.vat_number,
                    DailyReportModel.device_id,
                    DailyReportModel.reference_date,
                ).where(DailyReportModel.transmission_status == PENDING)
            )
            keys = [ReportKey(*row) for row in result.all()]
        for key in keys:
            self.register(key)
        if keys:
            logger.info("Restored %d pending outcome(s)", len(keys))
        return len(keys)

    async def poll_once(self) -> int:
        """Check every pending key once. Returns how many got an outcome."""
        if not self._pending:
            return 0
        logger.debug("Polling %d pending outcome(s)", len(self._pending))
        resolved = 0
        for key in list(self._pending):
            if await self._check(key):
                resolved += 1
        return resolved

    async def _check(self, key: ReportKey) -> bool:
        async with self._get_db().get_session() as session:
            report = await get_report(session, key)
            if report is None:
                logger.warning("Pending report %s/%s/%s no longer exists", *key)
                self._pending.pop(key, None)
                return False

            if report.transmission_status in (ACCEPTED, REJECTED):
                self._pending.pop(key, None)
                logger.info("Outcome %s found for %s/%s/%s", report.transmission_status, *key)
                return True

            try:
                outcome = await self.authority.query_outcome(*key)
            except TransportError as e:
                logger.warning("Outcome query failed for %s/%s/%s: %s", *key, e.message)
                outcome = None

            if outcome is not None:
                apply_outcome(report, outcome)
                self._pending.pop(key, None)
                logger.info("Outcome %s received for %s/%s/%s", outcome.status, *key)
                return True

            retries = self._pending[key] + 1
            self._pending[key] = retries
            if retries < self.max_retries:
                return False

            del self._pending[key]
            self._unresolved.append(key)
            report.transmission_status = UNRESOLVED
            logger.error(
                "No outcome for %s/%s/%s after %d polls, giving up", *key, retries,
            )
            if self.anomaly_service is not None:
                await self.anomaly_service.record(
                    session,
                    OUTCOME_UNRESOLVED,
                    vat_number=key.vat_number,
                    device_id=key.device_id,
                    reference_date=key.reference_date,
                    details=f"No outcome after {retries} polls",
                    detail={"retries": retries},
                )
            return False
