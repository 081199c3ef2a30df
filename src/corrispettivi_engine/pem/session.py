"""Emission point session manager.

State machine::

    CLOSED --open_session--> OPEN --emit_receipt*--> OPEN --close_session--> CLOSED

One session owns one ``Journal`` and one ``ReceiptBuilder``. Sessions on the same
day share the stored day journal and one document numbering sequence;
per-day counters live in the storage metadata. Calls are
expected to be serialized by the caller; nothing here is safe to run
concurrently against the same session.

Receipts that cannot be pushed to the elaboration point go to an unsynced
backlog. Closing retries the backlog exactly once, seals the journal and
pushes it. Local storage stays authoritative whatever the sync outcome.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from corrispettivi_engine.client import PELClient
from corrispettivi_engine.common.exceptions import StateError, TransportError
from corrispettivi_engine.journal.chain import EntryType, Journal
from corrispettivi_engine.pem.storage import EmissionPointStorage
from corrispettivi_engine.receipts.builder import LineInput, Receipt, ReceiptBuilder

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"


@dataclass
class EmissionPointConfig:
    vat_number: str
    business_name: str
    device_id: str
    device_type: str = "RT"


@dataclass
class EmissionResult:
    receipt: Receipt
    entry_hash: str
    synced: bool


@dataclass
class SessionSummary:
    total_documents: int
    total_amount: Decimal
    journal_hash: str
    journal_synced: bool
    unsynced_count: int
    unsynced_documents: list[str] = field(default_factory=list)


class EmissionPointSession:
    def __init__(
        self,
        config: EmissionPointConfig,
        storage: EmissionPointStorage,
        pel_client: Optional[PELClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.storage = storage
        self.pel_client = pel_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state = SessionState.CLOSED
        self._journal: Optional[Journal] = None
        self._builder: Optional[ReceiptBuilder] = None
        self._reference_date: Optional[str] = None
        self._session_id: Optional[str] = None
        self._backlog: list[Receipt] = []
        self._emitted = 0
        self._session_number = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def journal(self) -> Optional[Journal]:
        return self._journal

    @property
    def reference_date(self) -> Optional[str]:
        return self._reference_date

    @property
    def backlog(self) -> list[Receipt]:
        return list(self._backlog)

    def _require_open(self) -> None:
        if self._state is not SessionState.OPEN:
            raise StateError("Session not open")

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    # ── Open ──

    def _day_key(self, reference_date: str) -> str:
        return f"day/{self.config.device_id}/{reference_date}"

    def _day_metadata(self, reference_date: str) -> dict[str, int]:
        stored = self.storage.get_metadata(self._day_key(reference_date)) or {}
        return {
            "sessions": int(stored.get("sessions", 0)),
            "last_document_number": int(stored.get("last_document_number", 0)),
        }

    def _save_day_metadata(self, **changes: int) -> None:
        assert self._reference_date is not None
        day = self._day_metadata(self._reference_date)
        day.update(changes)
        self.storage.save_metadata(self._day_key(self._reference_date), day)

    def open_session(self) -> str:
        """Open a session and its journal. Returns the OPEN entry hash.

        A later session on the same day resumes the stored day journal and
        continues its document numbering, so nothing already issued is
        overwritten.
        """
        if self._state is SessionState.OPEN:
            raise StateError("Session already open")

        seed = None
        if self.pel_client is not None:
            try:
                seed = self.pel_client.get_session_seed(self.config.device_id)
                logger.info("Received session seed from PEL: %s...", seed.seed[:8])
            except TransportError as e:
                logger.warning("Failed to get seed from PEL, continuing offline: %s", e.message)

        reference_date = self._clock().date().isoformat()
        stored = self.storage.get_journal(reference_date)
        if stored:
            journal = Journal.restore(stored, clock=self._now_iso)
            logger.info("Resuming day journal %s (%d entries)", reference_date, len(journal))
        else:
            journal = Journal(clock=self._now_iso)
        day = self._day_metadata(reference_date)
        last_number = max(day["last_document_number"], _last_document_number(journal))

        self._reference_date = reference_date
        self._journal = journal
        self._builder = ReceiptBuilder(
            vat_number=self.config.vat_number,
            business_name=self.config.business_name,
            device_id=self.config.device_id,
            reference_date=reference_date,
            clock=self._clock,
            last_number=last_number,
        )
        self._session_id = seed.session_id if seed else None
        entry_hash = self._journal.open(
            session_id=self._session_id,
            seed=seed.seed if seed else None,
        )
        self._session_number = day["sessions"] + 1
        self._save_day_metadata(sessions=self._session_number, last_document_number=last_number)
        self._backlog = []
        self._emitted = 0
        self._state = SessionState.OPEN
        logger.info(
            "PEM session %d opened (%s, %s)",
            self._session_number, self.config.device_id, reference_date,
        )
        return entry_hash

    # ── Emit ──

    def emit_receipt(self, lines: list[LineInput]) -> EmissionResult:
        """Build, persist, journal and push one receipt.

        Storage failures propagate: a receipt that is not stored locally is
        not emitted. Push failures only put the receipt in the backlog.
        """
        self._require_open()
        assert self._builder is not None and self._journal is not None

        receipt = self._builder.build(lines, self._builder.next_document_number())
        receipt_dict = receipt.to_dict()

        self.storage.save_receipt(
            f"{receipt.reference_date}-{receipt.display_number}", receipt_dict,
        )
        entry_hash = self._journal.append(receipt_dict)
        self._emitted += 1
        self._save_day_metadata(last_document_number=receipt.document_number)

        synced = False
        if self.pel_client is not None:
            result = self.pel_client.send_receipt(receipt_dict)
            if result.success:
                synced = True
                logger.info(
                    "Receipt emitted: %s (%s EUR), synced",
                    receipt.display_number, receipt.total_amount,
                )
            else:
                logger.warning(
                    "Receipt emitted: %s, sync failed: %s",
                    receipt.display_number, result.error,
                )
                self._backlog.append(receipt)
        else:
            logger.info(
                "Receipt emitted: %s (%s EUR), offline",
                receipt.display_number, receipt.total_amount,
            )

        return EmissionResult(receipt=receipt, entry_hash=entry_hash, synced=synced)

    # ── Close ──

    def _retry_backlog(self) -> None:
        if not self._backlog or self.pel_client is None:
            return
        logger.info("Retrying %d unsynced receipts", len(self._backlog))
        still_unsynced = []
        for receipt in self._backlog:
            result = self.pel_client.send_receipt(receipt.to_dict())
            if result.success:
                logger.info("Synced %s", receipt.display_number)
            else:
                logger.warning("Failed to sync %s: %s", receipt.display_number, result.error)
                still_unsynced.append(receipt)
        self._backlog = still_unsynced

    def close_session(self) -> SessionSummary:
        self._require_open()
        assert self._journal is not None and self._reference_date is not None

        self._retry_backlog()

        closed = self._journal.close()
        exported = self._journal.export(
            vat_number=self.config.vat_number,
            device_id=self.config.device_id,
            reference_date=self._reference_date,
        )
        self.storage.save_journal(self._reference_date, exported)

        journal_synced = False
        if self.pel_client is not None:
            result = self.pel_client.send_journal(exported)
            journal_synced = result.success
            if journal_synced:
                logger.info("Journal synced to PEL")
            else:
                logger.warning("Journal NOT synced to PEL, stored locally: %s", result.error)

            if self._backlog or not journal_synced:
                self._report_sync_failure(journal_synced)

        self._state = SessionState.CLOSED
        unsynced = [r.display_number for r in self._backlog]
        logger.info(
            "Session closed: %d documents, %s EUR, %d unsynced",
            closed.total_documents, closed.total_amount, len(unsynced),
        )
        return SessionSummary(
            total_documents=closed.total_documents,
            total_amount=closed.total_amount,
            journal_hash=closed.hash,
            journal_synced=journal_synced,
            unsynced_count=len(unsynced),
            unsynced_documents=unsynced,
        )

    def _report_sync_failure(self, journal_synced: bool) -> None:
        assert self.pel_client is not None
        anomaly = {
            "type": "SYNC_FAILURE",
            "vat_number": self.config.vat_number,
            "device_id": self.config.device_id,
            "reference_date": self._reference_date,
            "details": (
                f"{len(self._backlog)} receipts unsynced, "
                f"journal {'synced' if journal_synced else 'not synced'}"
            ),
            "unsynced_documents": [r.display_number for r in self._backlog],
            "timestamp": self._now_iso(),
        }
        result = self.pel_client.report_anomaly(anomaly)
        if not result.success:
            logger.warning("Could not report sync failure: %s", result.error)

    # ── Introspection ──

    def verify_journal(self) -> bool:
        return self._journal.verify() if self._journal is not None else True

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "device_id": self.config.device_id,
            "device_type": self.config.device_type,
            "reference_date": self._reference_date,
            "session_id": self._session_id,
            "session_number": self._session_number,
            "documents_emitted": self._emitted,
            "unsynced": len(self._backlog),
            "journal_verified": self.verify_journal(),
        }


def _last_document_number(journal: Journal) -> int:
    numbers = [
        int(e.payload["receipt"]["document_number"])
        for e in journal.entries
        if e.type is EntryType.DOCUMENT
    ]
    return max(numbers, default=0)
