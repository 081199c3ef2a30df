"""Audit job service: asynchronous journal and receipt queries.

A job is created in PROCESSING and handed to a background worker, which
exports every match as an XML artifact in the blob store and then moves
the job to READY with its artifact list. No match, or any failure, ends
the job in UNAVAILABLE; on failure the artifacts already written are
deleted. Terminal jobs older than ``audit_job_retention`` are purged by a
periodic sweep.
"""

import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from corrispettivi_engine.audit.export import (
    document_file_name,
    journal_file_name,
    journal_to_xml,
    receipt_to_xml,
    unique_name,
)
from corrispettivi_engine.audit.models import AuditJobModel
from corrispettivi_engine.common.config import CorrispettiviSettings
from corrispettivi_engine.common.exceptions import NotFoundError, StateError, ValidationError
from corrispettivi_engine.common.money import format_amount, to_decimal
from corrispettivi_engine.common.scheduling import PeriodicTask, TaskTracker
from corrispettivi_engine.ingestion.models import JournalModel, ReceiptModel
from corrispettivi_engine.storage.blob import BlobStore

if TYPE_CHECKING:
    from corrispettivi_engine.common.database import DatabaseManager

logger = logging.getLogger(__name__)


class AuditKind(str, enum.Enum):
    JOURNAL = "journal"
    DOCUMENT = "document"


class AuditStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    READY = "READY"
    UNAVAILABLE = "UNAVAILABLE"


TERMINAL_STATUSES = (AuditStatus.READY.value, AuditStatus.UNAVAILABLE.value)


def artifact_key(kind: str, job_id: str, name: str) -> str:
    return f"audit/{kind}/{job_id}/{name}"


class AuditJobService:
    def __init__(
        self,
        settings: CorrispettiviSettings,
        blob_store: BlobStore,
        db: Optional["DatabaseManager"] = None,
    ):
        self.settings = settings
        self.blob_store = blob_store
        self._db = db
        self._tasks = TaskTracker()
        self._sweeper = PeriodicTask(
            "audit retention sweep", settings.audit_sweep_interval, self.purge_expired,
        )

    def _get_db(self) -> "DatabaseManager":
        if self._db is None:
            from corrispettivi_engine.deps import get_db
            self._db = get_db()
        return self._db

    # ── Job creation ──

    async def create_journal_job(
        self,
        session: AsyncSession,
        device_id: str,
        date_from: str,
        date_to: str,
        vat_number: Optional[str] = None,
    ) -> AuditJobModel:
        if not device_id:
            raise ValidationError("device_id is required")
        if date_from > date_to:
            raise ValidationError("date_from must not be after date_to")
        job = AuditJobModel(
            kind=AuditKind.JOURNAL.value,
            status=AuditStatus.PROCESSING.value,
            query={
                "device_id": device_id,
                "date_from": date_from,
                "date_to": date_to,
                "vat_number": vat_number,
            },
            result_files=[],
        )
        session.add(job)
        await session.flush()
        logger.info("Journal audit job %s created for %s %s..%s", job.id, device_id, date_from, date_to)
        return job

    async def create_document_job(
        self,
        session: AsyncSession,
        hashes: Optional[list[str]] = None,
        device_id: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> AuditJobModel:
        if hashes:
            query: dict[str, Any] = {"hashes": list(dict.fromkeys(hashes))}
        elif device_id and date_from and date_to:
            if date_from > date_to:
                raise ValidationError("date_from must not be after date_to")
            query = {"device_id": device_id, "date_from": date_from, "date_to": date_to}
        else:
            raise ValidationError("Provide either hashes or device_id with a date range")

        job = AuditJobModel(
            kind=AuditKind.DOCUMENT.value,
            status=AuditStatus.PROCESSING.value,
            query=query,
            result_files=[],
        )
        session.add(job)
        await session.flush()
        logger.info("Document audit job %s created", job.id)
        return job

    # ── Background processing ──

    def launch(self, job_id: str) -> None:
        """Process a created job in the background. Call after its commit."""
        self._tasks.spawn(self.process(job_id))

    async def drain(self) -> None:
        await self._tasks.drain()

    async def process(self, job_id: str) -> None:
        db = self._get_db()
        async with db.get_session() as session:
            job = await session.get(AuditJobModel, job_id)
            if job is None:
                logger.warning("Audit job %s vanished before processing", job_id)
                return
            kind, query = job.kind, dict(job.query or {})

        files: list[dict[str, Any]] = []
        error: Optional[str] = None
        try:
            if kind == AuditKind.JOURNAL.value:
                files = await self._export_journals(job_id, query)
            else:
                files = await self._export_documents(job_id, query)
        except Exception as e:
            logger.exception("Audit job %s failed", job_id)
            error = str(e) or e.__class__.__name__
            files = []
            await self.blob_store.delete_prefix(f"audit/{kind}/{job_id}/")

        async with db.get_session() as session:
            job = await session.get(AuditJobModel, job_id)
            if job is None:
                return
            job.completed_at = datetime.now(timezone.utc)
            if files:
                job.result_files = files
                job.status = AuditStatus.READY.value
            else:
                job.result_files = []
                job.status = AuditStatus.UNAVAILABLE.value
                job.error = error or "No matching records"
        logger.info("Audit job %s finished: %d artifact(s)", job_id, len(files))

    async def _store_artifact(
        self,
        kind: str,
        job_id: str,
        name: str,
        data: bytes,
    ) -> dict[str, Any]:
        await self.blob_store.store(artifact_key(kind, job_id, name), data)
        return {"name": name, "size": len(data)}

    async def _export_journals(self, job_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        stmt = select(JournalModel).where(
            JournalModel.device_id == query["device_id"],
            JournalModel.reference_date >= query["date_from"],
            JournalModel.reference_date <= query["date_to"],
        )
        if query.get("vat_number"):
            stmt = stmt.where(JournalModel.vat_number == query["vat_number"])
        stmt = stmt.order_by(JournalModel.reference_date)

        async with self._get_db().get_session() as session:
            journals = [
                {
                    "version": j.version,
                    "vat_number": j.vat_number,
                    "device_id": j.device_id,
                    "reference_date": j.reference_date,
                    "generated_at": j.generated_at,
                    "document_count": j.document_count,
                    "total_amount": format_amount(to_decimal(j.total_amount)),
                    "head_hash": j.head_hash,
                    "integrity_valid": j.integrity_valid,
                    "entries": j.entries or [],
                }
                for j in (await session.execute(stmt)).scalars().all()
            ]

        files = []
        taken: set[str] = set()
        for journal in journals:
            name = unique_name(
                journal_file_name(journal["device_id"], journal["reference_date"]),
                journal["vat_number"], taken,
            )
            files.append(await self._store_artifact(
                AuditKind.JOURNAL.value, job_id, name, journal_to_xml(journal),
            ))
        return files

    async def _export_documents(self, job_id: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        if query.get("hashes"):
            stmt = select(ReceiptModel).where(ReceiptModel.content_hash.in_(query["hashes"]))
        else:
            stmt = select(ReceiptModel).where(
                ReceiptModel.device_id == query["device_id"],
                ReceiptModel.reference_date >= query["date_from"],
                ReceiptModel.reference_date <= query["date_to"],
            )
        stmt = stmt.order_by(ReceiptModel.reference_date, ReceiptModel.document_number)

        async with self._get_db().get_session() as session:
            receipts = [
                (r.payload, r.content_hash)
                for r in (await session.execute(stmt)).scalars().all()
            ]

        files = []
        taken: set[str] = set()
        for payload, content_hash in receipts:
            name = unique_name(
                document_file_name(
                    int(payload["document_number"]), payload["device_id"], payload["reference_date"],
                ),
                content_hash[:12], taken,
            )
            files.append(await self._store_artifact(
                AuditKind.DOCUMENT.value, job_id, name, receipt_to_xml(payload, content_hash),
            ))
        return files

    # ── Queries ──

    async def get_job(self, session: AsyncSession, job_id: str, kind: str) -> AuditJobModel:
        job = await session.get(AuditJobModel, job_id)
        if job is None or job.kind != kind:
            raise NotFoundError(f"Audit job {job_id} not found")
        return job

    async def list_artifacts(
        self,
        session: AsyncSession,
        job_id: str,
        kind: str,
    ) -> list[dict[str, Any]]:
        job = await self.get_job(session, job_id, kind)
        if job.status != AuditStatus.READY.value:
            raise StateError(f"Audit job {job_id} is {job.status}")
        return list(job.result_files or [])

    async def download_artifact(
        self,
        session: AsyncSession,
        job_id: str,
        kind: str,
        name: str,
    ) -> bytes:
        files = await self.list_artifacts(session, job_id, kind)
        if name not in {f["name"] for f in files}:
            raise NotFoundError(f"Artifact {name} not found")
        data = await self.blob_store.retrieve(artifact_key(kind, job_id, name))
        if data is None:
            raise NotFoundError(f"Artifact {name} is missing from storage")
        return data

    # ── Retention ──

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete terminal jobs past retention along with their artifacts."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.settings.audit_job_retention)
        async with self._get_db().get_session() as session:
            result = await session.execute(
                select(AuditJobModel.id, AuditJobModel.kind).where(
                    AuditJobModel.created_at < cutoff,
                    AuditJobModel.status.in_(TERMINAL_STATUSES),
                )
            )
            expired = list(result.all())
            if not expired:
                return 0
            for job_id, kind in expired:
                await self.blob_store.delete_prefix(f"audit/{kind}/{job_id}/")
            await session.execute(
                delete(AuditJobModel).where(AuditJobModel.id.in_([j for j, _ in expired]))
            )
        logger.info("Purged %d expired audit job(s)", len(expired))
        return len(expired)

    def start_sweeper(self) -> None:
        self._sweeper.start()

    async def stop_sweeper(self) -> None:
        await self._sweeper.stop()
