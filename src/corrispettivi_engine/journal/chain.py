"""Hash-chained journal of one emission session.

Each entry stores the hash of its predecessor as a plain value, and its own
hash is SHA-256 over the canonical JSON of ``(type, timestamp, payload,
previous_hash)``; the entry's own ``hash`` is never part of its input.
The first entry chains off ``GENESIS_HASH``. Verification is a pure fold
over the entry sequence, so PEM and PEL run the exact same walk.
"""

import copy
import enum
import hashlib
import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, ClassVar, Optional, Union

from corrispettivi_engine.common.exceptions import IntegrityError, StateError, ValidationError
from corrispettivi_engine.common.money import ZERO, format_amount, round_cents, to_decimal

GENESIS_HASH = "0" * 64
JOURNAL_VERSION = "1.0"


class EntryType(str, enum.Enum):
    OPEN = "OPEN"
    DOCUMENT = "DOCUMENT"
    CLOSE = "CLOSE"


# ── Entry payloads ──


@dataclass(frozen=True)
class OpenPayload:
    kind: ClassVar[EntryType] = EntryType.OPEN

    opened_at: str
    session_id: Optional[str] = None
    seed: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"opened_at": self.opened_at, "session_id": self.session_id, "seed": self.seed}

    @property
    def amount(self) -> Decimal:
        return ZERO


@dataclass(frozen=True)
class DocumentPayload:
    kind: ClassVar[EntryType] = EntryType.DOCUMENT

    receipt: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"receipt": self.receipt}

    @property
    def amount(self) -> Decimal:
        return to_decimal(self.receipt.get("total_amount", "0"))


@dataclass(frozen=True)
class ClosePayload:
    kind: ClassVar[EntryType] = EntryType.CLOSE

    closed_at: str
    total_documents: int
    total_amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "closed_at": self.closed_at,
            "total_documents": self.total_documents,
            "total_amount": format_amount(self.total_amount),
        }

    @property
    def amount(self) -> Decimal:
        return ZERO


EntryPayload = Union[OpenPayload, DocumentPayload, ClosePayload]


def payload_from_dict(entry_type: EntryType, data: dict[str, Any]) -> EntryPayload:
    """Rebuild the typed payload for an entry type from its dict form."""
    if not isinstance(data, dict):
        raise ValidationError(f"{entry_type.value} payload must be an object")
    try:
        if entry_type is EntryType.OPEN:
            return OpenPayload(
                opened_at=data["opened_at"],
                session_id=data.get("session_id"),
                seed=data.get("seed"),
            )
        if entry_type is EntryType.DOCUMENT:
            return DocumentPayload(receipt=data["receipt"])
        if entry_type is EntryType.CLOSE:
            return ClosePayload(
                closed_at=data["closed_at"],
                total_documents=int(data["total_documents"]),
                total_amount=to_decimal(data["total_amount"]),
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"Malformed {entry_type.value} payload: {exc}") from exc
    raise ValidationError(f"Unknown entry type {entry_type!r}")


# ── Entries ──


def compute_entry_hash(
    entry_type: str,
    timestamp: str,
    payload: dict[str, Any],
    previous_hash: str,
) -> str:
    """SHA-256 of canonical JSON of the hashed entry fields."""
    canonical = json.dumps(
        {
            "type": entry_type,
            "timestamp": timestamp,
            "payload": payload,
            "previous_hash": previous_hash,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class JournalEntry:
    number: int
    type: EntryType
    timestamp: str
    payload: dict[str, Any]
    amount: Decimal
    previous_hash: str
    hash: str

    def typed_payload(self) -> EntryPayload:
        return payload_from_dict(self.type, self.payload)

    def recompute_hash(self) -> str:
        return compute_entry_hash(
            self.type.value, self.timestamp, self.payload, self.previous_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "amount": format_amount(self.amount),
            "payload": copy.deepcopy(self.payload),
            "previous_hash": self.previous_hash,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JournalEntry":
        try:
            return cls(
                number=int(data["number"]),
                type=EntryType(data["type"]),
                timestamp=data["timestamp"],
                payload=copy.deepcopy(data.get("payload") or {}),
                amount=to_decimal(data.get("amount", "0")),
                previous_hash=data["previous_hash"],
                hash=data["hash"],
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed journal entry: {exc}") from exc


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    entries_checked: int
    break_at: Optional[int] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "entries_checked": self.entries_checked,
            "break_at": self.break_at,
            "reason": self.reason,
        }


def verify_chain(entries: list[JournalEntry]) -> ChainVerification:
    """Walk entries from genesis, checking linkage and recomputed hashes.

    ``break_at`` is the progressive number of the first bad entry.
    """
    previous_hash = GENESIS_HASH
    for index, entry in enumerate(entries):
        if entry.previous_hash != previous_hash:
            return ChainVerification(
                valid=False, entries_checked=index, break_at=entry.number,
                reason="previous_hash does not match predecessor",
            )
        if entry.recompute_hash() != entry.hash:
            return ChainVerification(
                valid=False, entries_checked=index, break_at=entry.number,
                reason="hash does not match entry content",
            )
        previous_hash = entry.hash
    return ChainVerification(valid=True, entries_checked=len(entries))


# ── Journal ──


@dataclass(frozen=True)
class CloseResult:
    hash: str
    total_documents: int
    total_amount: Decimal


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Journal:
    """Append-only journal: OPEN, then DOCUMENT entries, then CLOSE.

    The journal may be reopened after a close; the next OPEN chains off the
    CLOSE entry and close totals only cover documents since that OPEN.
    Payload dicts are copied on the way in and on the way out, so callers
    holding a receipt dict or an entry cannot alter the sealed chain.
    """

    def __init__(self, clock: Optional[Callable[[], str]] = None):
        self._entries: list[JournalEntry] = []
        self._head_hash = GENESIS_HASH
        self._is_open = False
        self._session_start = 0
        self._clock = clock or _utcnow_iso

    @classmethod
    def restore(
        cls,
        exported: dict[str, Any],
        clock: Optional[Callable[[], str]] = None,
    ) -> "Journal":
        """Rebuild a closed journal from its exported form so it can be reopened."""
        journal = cls(clock=clock)
        entries = [JournalEntry.from_dict(raw) for raw in exported.get("entries") or []]
        result = verify_chain(entries)
        if not result.valid:
            raise IntegrityError(
                f"Stored journal broken at entry {result.break_at}: {result.reason}",
            )
        if entries and entries[-1].type is not EntryType.CLOSE:
            raise StateError("Stored journal was not closed")
        journal._entries = entries
        journal._head_hash = entries[-1].hash if entries else GENESIS_HASH
        journal._session_start = len(entries)
        return journal

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def head_hash(self) -> str:
        return self._head_hash

    @property
    def entries(self) -> list[JournalEntry]:
        return [replace(e, payload=copy.deepcopy(e.payload)) for e in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def _append(self, payload: EntryPayload) -> JournalEntry:
        timestamp = self._clock()
        payload_dict = copy.deepcopy(payload.to_dict())
        entry = JournalEntry(
            number=len(self._entries) + 1,
            type=payload.kind,
            timestamp=timestamp,
            payload=payload_dict,
            amount=payload.amount,
            previous_hash=self._head_hash,
            hash=compute_entry_hash(
                payload.kind.value, timestamp, payload_dict, self._head_hash,
            ),
        )
        self._entries.append(entry)
        self._head_hash = entry.hash
        return entry

    def open(self, session_id: Optional[str] = None, seed: Optional[str] = None) -> str:
        if self._is_open:
            raise StateError("Journal already open")
        self._session_start = len(self._entries)
        entry = self._append(OpenPayload(opened_at=self._clock(), session_id=session_id, seed=seed))
        self._is_open = True
        return entry.hash

    def append(self, receipt: dict[str, Any]) -> str:
        if not self._is_open:
            raise StateError("Journal not open")
        return self._append(DocumentPayload(receipt=receipt)).hash

    def session_documents(self) -> list[JournalEntry]:
        return [
            e for e in self._entries[self._session_start:]
            if e.type is EntryType.DOCUMENT
        ]

    def close(self) -> CloseResult:
        if not self._is_open:
            raise StateError("Journal not open")
        documents = self.session_documents()
        total = round_cents(sum((e.amount for e in documents), ZERO))
        entry = self._append(ClosePayload(
            closed_at=self._clock(),
            total_documents=len(documents),
            total_amount=total,
        ))
        self._is_open = False
        return CloseResult(hash=entry.hash, total_documents=len(documents), total_amount=total)

    def verify(self) -> bool:
        return verify_chain(self._entries).valid

    def export(
        self,
        vat_number: str,
        device_id: str,
        reference_date: str,
    ) -> dict[str, Any]:
        """Wire form pushed to the elaboration point and kept locally."""
        documents = [e for e in self._entries if e.type is EntryType.DOCUMENT]
        return {
            "version": JOURNAL_VERSION,
            "vat_number": vat_number,
            "device_id": device_id,
            "reference_date": reference_date,
            "generated_at": self._clock(),
            "document_count": len(documents),
            "total_amount": format_amount(sum((e.amount for e in documents), ZERO)),
            "head_hash": self._head_hash,
            "entries": [e.to_dict() for e in self._entries],
        }
