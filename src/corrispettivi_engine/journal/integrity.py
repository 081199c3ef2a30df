"""Integrity check for a journal received over the wire.

Runs the same chain walk as the emitting device's ``Journal.verify()`` and
adds the structural checks the elaboration point applies on ingest:
progressive numbers 1..N, mandatory entry fields, zero amounts on OPEN and
CLOSE, each CLOSE payload against its session documents, and the declared
day total and document count against the hashed receipt payloads. The
unhashed entry ``amount`` is never trusted on its own.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from corrispettivi_engine.common.exceptions import IntegrityError, ValidationError
from corrispettivi_engine.common.money import CENT, ZERO, amounts_match, round_cents, to_decimal
from corrispettivi_engine.journal.chain import (
    ChainVerification,
    EntryType,
    JournalEntry,
    verify_chain,
)

REQUIRED_ENTRY_FIELDS = ("number", "type", "timestamp", "amount", "previous_hash", "hash")


@dataclass
class IntegrityReport:
    valid: bool
    errors: list[str] = field(default_factory=list)
    chain: Optional[ChainVerification] = None
    computed_total: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "chain": self.chain.to_dict() if self.chain else None,
            "computed_total": str(self.computed_total),
        }

    def raise_for_errors(self) -> None:
        """Raise IntegrityError carrying every failed check."""
        if not self.valid:
            raise IntegrityError(
                f"Journal failed {len(self.errors)} integrity check(s)", errors=list(self.errors),
            )


def check_journal_integrity(
    journal: dict[str, Any],
    tolerance: Decimal = CENT,
) -> IntegrityReport:
    entries_raw = journal.get("entries") or []
    errors: list[str] = []

    if not entries_raw:
        return IntegrityReport(valid=False, errors=["Journal has no entries"])

    entries: list[JournalEntry] = []
    for index, raw in enumerate(entries_raw, start=1):
        if not isinstance(raw, dict):
            errors.append(f"Entry {index} is not an object")
            continue
        missing = [name for name in REQUIRED_ENTRY_FIELDS if raw.get(name) in (None, "")]
        if missing:
            errors.append(f"Entry {index} missing required fields: {', '.join(missing)}")
            continue
        if raw["number"] != index:
            errors.append(
                f"Entry numbering error at position {index}: got {raw['number']}"
            )
        try:
            entries.append(JournalEntry.from_dict(raw))
        except ValidationError as exc:
            errors.append(f"Entry {index}: {exc.message}")

    computed_total = ZERO
    for entry in entries:
        if entry.type is not EntryType.DOCUMENT:
            if entry.amount != ZERO:
                errors.append(
                    f"Entry {entry.number}: {entry.type.value} entry must carry amount 0, "
                    f"got {entry.amount}"
                )
            continue
        payload_amount = _document_amount(entry)
        if payload_amount is None:
            errors.append(f"Entry {entry.number}: document payload has no readable total")
            continue
        computed_total += payload_amount
        if payload_amount != entry.amount:
            errors.append(
                f"Entry {entry.number}: amount {entry.amount} differs from receipt total {payload_amount}"
            )

    errors.extend(_check_session_closes(entries, tolerance))
    if entries and entries[-1].type is not EntryType.CLOSE:
        errors.append("Journal does not end with a CLOSE entry")

    chain: Optional[ChainVerification] = None
    if len(entries) == len(entries_raw):
        chain = verify_chain(entries)
        if not chain.valid:
            errors.append(f"Hash chain broken at entry {chain.break_at}: {chain.reason}")
        elif journal.get("head_hash") and journal["head_hash"] != entries[-1].hash:
            errors.append("Declared head hash does not match the last entry")

    declared_raw = journal.get("total_amount")
    try:
        declared_total = to_decimal(declared_raw) if declared_raw is not None else None
    except ValueError:
        declared_total = None
        errors.append(f"Declared total is not an amount: {declared_raw!r}")
    if declared_total is not None and not amounts_match(computed_total, declared_total, tolerance):
        errors.append(
            f"Journal total mismatch: calculated={computed_total}, declared={declared_total}"
        )

    declared_count = journal.get("document_count")
    document_count = sum(1 for e in entries if e.type is EntryType.DOCUMENT)
    if declared_count is not None and declared_count != document_count:
        errors.append(
            f"Document count mismatch: counted={document_count}, declared={declared_count}"
        )

    return IntegrityReport(
        valid=not errors, errors=errors, chain=chain, computed_total=computed_total,
    )


def _document_amount(entry: JournalEntry) -> Optional[Decimal]:
    try:
        return entry.typed_payload().amount
    except (ValidationError, ValueError):
        return None


def _check_session_closes(entries: list[JournalEntry], tolerance: Decimal) -> list[str]:
    """Each CLOSE payload must match the documents since the preceding OPEN."""
    errors: list[str] = []
    count, total = 0, ZERO
    for entry in entries:
        if entry.type is EntryType.OPEN:
            count, total = 0, ZERO
        elif entry.type is EntryType.DOCUMENT:
            count += 1
            total += _document_amount(entry) or ZERO
        else:
            try:
                payload = entry.typed_payload()
            except ValidationError as exc:
                errors.append(f"Entry {entry.number}: {exc.message}")
                continue
            if payload.total_documents != count:
                errors.append(
                    f"Entry {entry.number}: CLOSE declares {payload.total_documents} "
                    f"documents, session has {count}"
                )
            if not amounts_match(payload.total_amount, total, tolerance):
                errors.append(
                    f"Entry {entry.number}: CLOSE declares total {payload.total_amount}, "
                    f"session documents sum to {round_cents(total)}"
                )
    return errors
