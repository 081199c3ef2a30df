"""Aggregation engine: one sealed journal's receipts into a daily report.

A daily report groups every receipt of one ``(vat_number, device_id,
reference_date)`` by VAT rate or exemption nature. At most one report
exists per key: re-aggregating updates it in place, and a report whose
figures did not change is not sent to the authority again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from corrispettivi_engine.aggregation.models import DailyReportModel
from corrispettivi_engine.authority.client import AuthorityClient, Outcome
from corrispettivi_engine.common.config import CorrispettiviSettings
from corrispettivi_engine.common.exceptions import NotFoundError, TransportError
from corrispettivi_engine.common.locks import KeyedLock
from corrispettivi_engine.common.money import ZERO, format_amount, round_cents, to_decimal
from corrispettivi_engine.common.scheduling import TaskTracker
from corrispettivi_engine.ingestion.models import JournalModel, ReceiptModel
from corrispettivi_engine.receipts.builder import VatSummary, summarize_vat

if TYPE_CHECKING:
    from corrispettivi_engine.common.database import DatabaseManager
    from corrispettivi_engine.outcomes.poller import OutcomePoller

logger = logging.getLogger(__name__)

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
UNRESOLVED = "unresolved"


class ReportKey(NamedTuple):
    vat_number: str
    device_id: str
    reference_date: str


@dataclass(frozen=True)
class DailyReport:
    document_count: int
    total_amount: Decimal
    vat_breakdown: tuple[VatSummary, ...]

    def breakdown_dicts(self) -> list[dict[str, Any]]:
        return [group.to_dict() for group in self.vat_breakdown]


def build_daily_report(receipts: list[dict[str, Any]]) -> DailyReport:
    """Aggregate receipt dicts into per-group VAT totals.

    Each receipt contributes its groups' gross amounts; taxable and tax are
    then derived and rounded once per group across the whole day.
    """
    groups: list[tuple[Decimal, Optional[str], Decimal]] = []
    total = ZERO
    for receipt in receipts:
        for group in receipt.get("vat_summary", []):
            summary = VatSummary.from_dict(group)
            groups.append((summary.vat_rate, summary.nature, summary.gross))
        total += to_decimal(receipt["total_amount"])
    return DailyReport(
        document_count=len(receipts),
        total_amount=round_cents(total),
        vat_breakdown=tuple(summarize_vat(groups)),
    )


def report_payload(report: DailyReportModel) -> dict[str, Any]:
    """Wire form handed to the authority."""
    return {
        "vat_number": report.vat_number,
        "device_id": report.device_id,
        "reference_date": report.reference_date,
        "document_count": report.document_count,
        "total_amount": format_amount(to_decimal(report.total_amount)),
        "vat_breakdown": report.vat_breakdown,
    }


def apply_outcome(report: DailyReportModel, outcome: Outcome) -> None:
    report.transmission_status = ACCEPTED if outcome.accepted else REJECTED
    report.outcome_code = outcome.code or None
    report.outcome_description = outcome.description or None
    report.outcome_received_at = outcome.received_at or datetime.now(timezone.utc)


async def get_report(session: AsyncSession, key: ReportKey) -> Optional[DailyReportModel]:
    result = await session.execute(
        select(DailyReportModel).where(
            DailyReportModel.vat_number == key.vat_number,
            DailyReportModel.device_id == key.device_id,
            DailyReportModel.reference_date == key.reference_date,
        )
    )
    return result.scalar_one_or_none()


class AggregationService:
    """Builds, upserts and transmits daily reports."""

    def __init__(
        self,
        settings: CorrispettiviSettings,
        authority: AuthorityClient,
        locks: Optional[KeyedLock] = None,
        db: Optional["DatabaseManager"] = None,
        poller: Optional["OutcomePoller"] = None,
    ):
        self.settings = settings
        self.authority = authority
        self.locks = locks or KeyedLock()
        self.poller = poller
        self._db = db
        self._tasks = TaskTracker()

    def _get_db(self) -> "DatabaseManager":
        if self._db is None:
            from corrispettivi_engine.deps import get_db
            self._db = get_db()
        return self._db

    # ── Background scheduling ──

    def schedule(self, key: ReportKey) -> None:
        """Aggregate ``key`` in the background."""
        self._tasks.spawn(self._aggregate_logged(key))

    async def _aggregate_logged(self, key: ReportKey) -> None:
        try:
            await self.aggregate(key)
        except Exception:
            logger.exception(
                "Aggregation failed for %s/%s/%s", key.vat_number, key.device_id, key.reference_date,
            )

    async def drain(self) -> None:
        await self._tasks.drain()

    # ── Aggregate ──

    async def aggregate(self, key: ReportKey) -> Optional[DailyReportModel]:
        """Aggregate one key and send the report when its figures changed.

        Returns the report, or None when the session has no receipts.
        """
        async with self.locks.hold(key):
            report, changed = await self._upsert(key)
            if report is None:
                logger.info(
                    "No receipts for %s/%s/%s, no daily report",
                    key.vat_number, key.device_id, key.reference_date,
                )
                return None
            if changed:
                report = await self._transmit(key, report)
        return report

    async def _upsert(self, key: ReportKey) -> tuple[Optional[DailyReportModel], bool]:
        db = self._get_db()
        for attempt in range(2):
            try:
                async with db.get_session() as session:
                    return await self._upsert_in(session, key)
            except SAIntegrityError:
                # A concurrent writer inserted the same key; retry as an update.
                if attempt:
                    raise
                logger.info("Daily report insert conflict for %s, retrying", key)
        return None, False

    async def _upsert_in(
        self,
        session: AsyncSession,
        key: ReportKey,
    ) -> tuple[Optional[DailyReportModel], bool]:
        result = await session.execute(
            select(ReceiptModel.payload)
            .where(
                ReceiptModel.vat_number == key.vat_number,
                ReceiptModel.device_id == key.device_id,
                ReceiptModel.reference_date == key.reference_date,
            )
            .order_by(ReceiptModel.document_number)
        )
        receipts = [row[0] for row in result.all()]
        if not receipts:
            return None, False

        built = build_daily_report(receipts)
        breakdown = built.breakdown_dicts()
        head_hash = (await session.execute(
            select(JournalModel.head_hash).where(
                JournalModel.vat_number == key.vat_number,
                JournalModel.device_id == key.device_id,
                JournalModel.reference_date == key.reference_date,
            )
        )).scalar_one_or_none()

        report = await get_report(session, key)
        if report is None:
            report = DailyReportModel(
                vat_number=key.vat_number,
                device_id=key.device_id,
                reference_date=key.reference_date,
                document_count=built.document_count,
                total_amount=built.total_amount,
                vat_breakdown=breakdown,
                journal_head_hash=head_hash,
                transmission_status=PENDING,
                revision=1,
            )
            session.add(report)
            await session.flush()
            logger.info(
                "Daily report created for %s/%s/%s: %d documents, %s EUR",
                key.vat_number, key.device_id, key.reference_date,
                built.document_count, built.total_amount,
            )
            return report, True

        unchanged = (
            report.document_count == built.document_count
            and round_cents(to_decimal(report.total_amount)) == built.total_amount
            and report.vat_breakdown == breakdown
        )
        if unchanged and report.transmitted_at is not None:
            logger.info(
                "Daily report for %s/%s/%s unchanged, not resent",
                key.vat_number, key.device_id, key.reference_date,
            )
            return report, False

        report.document_count = built.document_count
        report.total_amount = built.total_amount
        report.vat_breakdown = breakdown
        report.journal_head_hash = head_hash
        report.revision += 1
        report.transmission_status = PENDING
        report.transmitted_at = None
        report.outcome_code = None
        report.outcome_description = None
        report.outcome_received_at = None
        await session.flush()
        logger.info(
            "Daily report updated for %s/%s/%s (revision %d)",
            key.vat_number, key.device_id, key.reference_date, report.revision,
        )
        return report, True

    async def _transmit(self, key: ReportKey, report: DailyReportModel) -> DailyReportModel:
        payload = report_payload(report)
        sent = False
        outcome: Optional[Outcome] = None
        try:
            outcome = await self.authority.send_report(payload)
            sent = True
        except TransportError as e:
            logger.warning(
                "Daily report %s/%s/%s not transmitted: %s",
                key.vat_number, key.device_id, key.reference_date, e.message,
            )

        async with self._get_db().get_session() as session:
            stored = await get_report(session, key)
            if stored is None:
                raise NotFoundError(f"Daily report {key} disappeared during transmission")
            if sent:
                stored.transmitted_at = datetime.now(timezone.utc)
            if outcome is not None:
                apply_outcome(stored, outcome)
            await session.flush()
            report = stored

        if outcome is None and self.poller is not None:
            self.poller.register(key)
        return report

    # ── Queries and manual outcomes ──

    async def get_report(self, session: AsyncSession, key: ReportKey) -> DailyReportModel:
        report = await get_report(session, key)
        if report is None:
            raise NotFoundError("Daily report not found")
        return report

    async def record_outcome(
        self,
        session: AsyncSession,
        key: ReportKey,
        outcome: Outcome,
    ) -> DailyReportModel:
        report = await self.get_report(session, key)
        apply_outcome(report, outcome)
        await session.flush()
        logger.info(
            "Outcome %s recorded for %s/%s/%s",
            report.transmission_status, key.vat_number, key.device_id, key.reference_date,
        )
        return report
