"""Ingestion service: seeds, receipts and journals pushed by emission devices."""

import json
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from corrispettivi_engine.aggregation.engine import ReportKey
from corrispettivi_engine.anomaly.service import INTEGRITY_ERROR, AnomalyService
from corrispettivi_engine.common.config import CorrispettiviSettings
from corrispettivi_engine.common.exceptions import ValidationError
from corrispettivi_engine.common.locks import KeyedLock
from corrispettivi_engine.common.money import amounts_match, round_cents, to_decimal
from corrispettivi_engine.ingestion.models import JournalModel, ReceiptModel, SessionSeedModel
from corrispettivi_engine.journal.integrity import IntegrityReport, check_journal_integrity
from corrispettivi_engine.receipts.builder import Receipt, receipt_content_hash
from corrispettivi_engine.storage.blob import BlobStore

logger = logging.getLogger(__name__)

RECEIPT_REQUIRED_FIELDS = (
    "vat_number", "device_id", "document_number", "issued_at",
    "lines", "vat_summary", "total_amount",
)
JOURNAL_REQUIRED_FIELDS = ("vat_number", "device_id", "reference_date", "total_amount", "entries")
DEVICE_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,63}")
REFERENCE_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")


def _missing_fields(body: dict[str, Any], required: tuple[str, ...]) -> list[str]:
    return [name for name in required if body.get(name) in (None, "")]


def _blob_safe(value: str) -> str:
    return value.replace(":", "-").replace("/", "-")


def _check_key_parts(device_id: str, reference_date: str) -> None:
    """Reject device ids and dates that are not safe as blob key segments."""
    errors = []
    if not DEVICE_ID_PATTERN.fullmatch(device_id):
        errors.append(f"invalid device_id: {device_id!r}")
    try:
        if not REFERENCE_DATE_PATTERN.fullmatch(reference_date):
            raise ValueError(reference_date)
        date.fromisoformat(reference_date)
    except ValueError:
        errors.append(f"invalid reference_date: {reference_date!r}")
    if errors:
        raise ValidationError("; ".join(errors), errors=errors)


@dataclass
class ReceiptIngestResult:
    receipt: ReceiptModel
    created: bool


@dataclass
class JournalIngestResult:
    journal: JournalModel
    integrity: IntegrityReport
    created: bool


class IngestionService:
    """Receives device data, persists it and checks journal integrity."""

    def __init__(
        self,
        settings: CorrispettiviSettings,
        blob_store: BlobStore,
        anomaly_service: Optional[AnomalyService] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.settings = settings
        self.blob_store = blob_store
        self.anomaly_service = anomaly_service
        self.locks = locks or KeyedLock()

    # ── Seeds ──

    async def issue_seed(
        self,
        session: AsyncSession,
        device_id: Optional[str] = None,
    ) -> SessionSeedModel:
        seed = SessionSeedModel(
            seed=secrets.token_hex(self.settings.seed_length),
            device_id=device_id or None,
        )
        session.add(seed)
        await session.flush()
        logger.info("Issued session seed %s for device %s", seed.session_id, device_id or "-")
        return seed

    # ── Receipts ──

    async def ingest_receipt(
        self,
        session: AsyncSession,
        body: dict[str, Any],
    ) -> ReceiptIngestResult:
        """Persist a receipt. Re-pushing the same receipt returns the first record."""
        missing = _missing_fields(body, RECEIPT_REQUIRED_FIELDS)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                errors=[f"missing field: {name}" for name in missing],
            )
        try:
            receipt = Receipt.from_dict(body)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed receipt: {exc}") from exc
        _check_key_parts(str(receipt.device_id), str(receipt.reference_date))

        if receipt.total_amount < 0:
            raise ValidationError("Receipt total must not be negative")
        if not amounts_match(
            receipt.total_amount, receipt.summary_total(), self.settings.amount_tolerance,
        ):
            raise ValidationError(
                f"Receipt total {receipt.total_amount} does not match "
                f"VAT summary {receipt.summary_total()}"
            )

        normalized = receipt.to_dict()
        content_hash = receipt_content_hash(normalized)
        existing = (await session.execute(
            select(ReceiptModel).where(ReceiptModel.content_hash == content_hash)
        )).scalar_one_or_none()
        if existing is not None:
            logger.info(
                "Duplicate receipt %s from %s ignored",
                receipt.display_number, receipt.device_id,
            )
            return ReceiptIngestResult(receipt=existing, created=False)

        received_at = datetime.now(timezone.utc)
        latency_ms = _latency_ms(receipt.issued_at, received_at)

        blob_key = (
            f"documents/{receipt.device_id}/{receipt.reference_date}/"
            f"{receipt.display_number}-{content_hash[:12]}.json"
        )
        await self.blob_store.store(blob_key, json.dumps(body, default=str).encode("utf-8"))

        model = ReceiptModel(
            content_hash=content_hash,
            vat_number=receipt.vat_number,
            device_id=receipt.device_id,
            document_number=receipt.document_number,
            reference_date=receipt.reference_date,
            issued_at=receipt.issued_at,
            total_amount=round_cents(receipt.total_amount),
            payload=normalized,
            latency_ms=latency_ms,
            blob_key=blob_key,
        )
        session.add(model)
        await session.flush()

        logger.info(
            "Receipt %s from %s received (%s EUR, latency %s ms)",
            receipt.display_number, receipt.device_id, receipt.total_amount,
            latency_ms if latency_ms is not None else "?",
        )
        return ReceiptIngestResult(receipt=model, created=True)

    # ── Journals ──

    def journal_key(self, body: dict[str, Any]) -> ReportKey:
        """Natural key of a pushed journal. Raises ValidationError if incomplete."""
        missing = _missing_fields(body, JOURNAL_REQUIRED_FIELDS)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                errors=[f"missing field: {name}" for name in missing],
            )
        if not isinstance(body["entries"], list):
            raise ValidationError("entries must be a list")
        key = ReportKey(
            str(body["vat_number"]), str(body["device_id"]), str(body["reference_date"]),
        )
        _check_key_parts(key.device_id, key.reference_date)
        return key

    async def ingest_journal(
        self,
        session: AsyncSession,
        body: dict[str, Any],
    ) -> JournalIngestResult:
        """Check and persist a sealed journal.

        A journal that fails the integrity check is still stored, flagged
        ``integrity_valid=False``, and an integrity anomaly is recorded.
        Callers serialize same-key ingests through ``self.locks``.
        """
        key = self.journal_key(body)
        try:
            declared_total = round_cents(to_decimal(body["total_amount"]))
        except ValueError as exc:
            raise ValidationError(f"Malformed total_amount: {exc}") from exc
        try:
            document_count = int(body.get("document_count") or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed document_count: {exc}") from exc

        integrity = check_journal_integrity(body, self.settings.amount_tolerance)
        if not integrity.valid:
            logger.warning(
                "Journal integrity check failed for %s/%s/%s: %s",
                key.vat_number, key.device_id, key.reference_date,
                "; ".join(integrity.errors),
            )
            if self.anomaly_service is not None:
                await self.anomaly_service.record(
                    session,
                    INTEGRITY_ERROR,
                    vat_number=key.vat_number,
                    device_id=key.device_id,
                    reference_date=key.reference_date,
                    details="; ".join(integrity.errors),
                    detail=integrity.to_dict(),
                )

        generated_at = str(body.get("generated_at") or datetime.now(timezone.utc).isoformat())
        blob_key = (
            f"journals/{key.device_id}/{key.reference_date}/{_blob_safe(generated_at)}.json"
        )
        await self.blob_store.store(blob_key, json.dumps(body, default=str).encode("utf-8"))

        journal = (await session.execute(
            select(JournalModel).where(
                JournalModel.vat_number == key.vat_number,
                JournalModel.device_id == key.device_id,
                JournalModel.reference_date == key.reference_date,
            )
        )).scalar_one_or_none()
        created = journal is None
        if journal is None:
            journal = JournalModel(
                vat_number=key.vat_number,
                device_id=key.device_id,
                reference_date=key.reference_date,
                ingest_count=0,
            )
            session.add(journal)

        entries = body["entries"]
        journal.generated_at = generated_at
        journal.version = str(body.get("version") or "1.0")
        journal.document_count = document_count
        journal.total_amount = declared_total
        journal.head_hash = body.get("head_hash") or (
            entries[-1].get("hash") if entries and isinstance(entries[-1], dict) else None
        )
        journal.entries = entries
        journal.integrity_valid = integrity.valid
        journal.integrity_errors = list(integrity.errors)
        journal.ingest_count = (journal.ingest_count or 0) + 1
        journal.last_ingested_at = datetime.now(timezone.utc)
        journal.blob_key = blob_key
        await session.flush()

        logger.info(
            "Journal %s/%s/%s ingested (%d entries, integrity %s, ingest #%d)",
            key.vat_number, key.device_id, key.reference_date, len(entries),
            "ok" if integrity.valid else "FAILED", journal.ingest_count,
        )
        return JournalIngestResult(journal=journal, integrity=integrity, created=created)


def _latency_ms(issued_at: str, received_at: datetime) -> Optional[int]:
    try:
        issued = datetime.fromisoformat(issued_at)
    except ValueError:
        return None
    if issued.tzinfo is None:
        issued = issued.replace(tzinfo=timezone.utc)
    return int((received_at - issued).total_seconds() * 1000)
