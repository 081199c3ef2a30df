"""Tests for the hash-chained journal."""

from dataclasses import replace
from decimal import Decimal

import pytest

from corrispettivi_engine.common.exceptions import IntegrityError, StateError, ValidationError
from corrispettivi_engine.journal.chain import (
    GENESIS_HASH,
    ClosePayload,
    DocumentPayload,
    EntryType,
    Journal,
    JournalEntry,
    OpenPayload,
    compute_entry_hash,
    payload_from_dict,
    verify_chain,
)


def _receipt(total: str, number: int = 1) -> dict:
    return {"document_number": number, "total_amount": total}


def _ticking_clock():
    ticks = iter(range(10_000))
    return lambda: f"2025-01-15T09:00:{next(ticks):05d}"


@pytest.fixture
def journal():
    return Journal(clock=_ticking_clock())


class TestLifecycle:
    def test_open_append_close_verifies(self, journal):
        journal.open(session_id="s-1", seed="abc")
        journal.append(_receipt("5.00", 1))
        journal.append(_receipt("5.00", 2))
        result = journal.close()

        assert result.total_documents == 2
        assert result.total_amount == Decimal("10.00")
        assert result.hash == journal.head_hash
        assert [e.type for e in journal.entries] == [
            EntryType.OPEN, EntryType.DOCUMENT, EntryType.DOCUMENT, EntryType.CLOSE,
        ]
        assert journal.verify() is True

    def test_first_entry_chains_off_genesis(self, journal):
        journal.open()
        assert journal.entries[0].previous_hash == GENESIS_HASH

    def test_each_entry_links_to_predecessor(self, journal):
        journal.open()
        journal.append(_receipt("1.00"))
        journal.close()
        entries = journal.entries
        for prev, entry in zip(entries, entries[1:]):
            assert entry.previous_hash == prev.hash

    def test_progressive_numbers(self, journal):
        journal.open()
        journal.append(_receipt("1.00"))
        journal.close()
        assert [e.number for e in journal.entries] == [1, 2, 3]

    def test_append_before_open_fails(self, journal):
        with pytest.raises(StateError):
            journal.append(_receipt("1.00"))

    def test_close_before_open_fails(self, journal):
        with pytest.raises(StateError):
            journal.close()

    def test_open_twice_fails(self, journal):
        journal.open()
        with pytest.raises(StateError):
            journal.open()

    def test_append_after_close_fails(self, journal):
        journal.open()
        journal.close()
        with pytest.raises(StateError):
            journal.append(_receipt("1.00"))

    def test_empty_session_closes_with_zero_totals(self, journal):
        journal.open()
        result = journal.close()
        assert result.total_documents == 0
        assert result.total_amount == Decimal("0.00")

    def test_reopen_chains_off_close_and_counts_only_new_session(self, journal):
        journal.open()
        journal.append(_receipt("3.00"))
        first = journal.close()

        journal.open()
        assert journal.entries[-1].previous_hash == first.hash
        journal.append(_receipt("2.00"))
        second = journal.close()

        assert second.total_documents == 1
        assert second.total_amount == Decimal("2.00")
        assert journal.verify() is True

    def test_open_payload_records_seed(self, journal):
        journal.open(session_id="s-9", seed="feed")
        payload = journal.entries[0].typed_payload()
        assert isinstance(payload, OpenPayload)
        assert payload.session_id == "s-9"
        assert payload.seed == "feed"


class TestTampering:
    def _sealed(self, journal):
        journal.open()
        journal.append(_receipt("5.00", 1))
        journal.append(_receipt("5.00", 2))
        journal.close()
        return journal.entries

    def test_payload_mutation_detected(self, journal):
        entries = self._sealed(journal)
        forged = dict(entries[1].payload)
        forged["receipt"] = _receipt("0.50", 1)
        entries[1] = replace(entries[1], payload=forged)
        result = verify_chain(entries)
        assert result.valid is False
        assert result.break_at == 2

    def test_timestamp_mutation_detected(self, journal):
        entries = self._sealed(journal)
        entries[2] = replace(entries[2], timestamp="2030-01-01T00:00:00")
        assert verify_chain(entries).valid is False

    def test_deleted_entry_detected(self, journal):
        entries = self._sealed(journal)
        del entries[1]
        result = verify_chain(entries)
        assert result.valid is False
        assert result.break_at == 3

    def test_reordered_entries_detected(self, journal):
        entries = self._sealed(journal)
        entries[1], entries[2] = entries[2], entries[1]
        assert verify_chain(entries).valid is False

    def test_rehashed_entry_still_breaks_successor(self, journal):
        entries = self._sealed(journal)
        forged_payload = {"receipt": _receipt("0.01", 1)}
        forged = replace(entries[1], payload=forged_payload)
        entries[1] = replace(forged, hash=forged.recompute_hash())
        result = verify_chain(entries)
        assert result.valid is False
        assert result.break_at == 3

    def test_verify_on_live_journal_detects_mutation(self, journal):
        self._sealed(journal)
        journal._entries[0] = replace(journal._entries[0], timestamp="tampered")
        assert journal.verify() is False


class TestHashing:
    def test_hash_excludes_own_hash_field(self, journal):
        journal.open()
        entry = journal.entries[0]
        assert entry.hash == compute_entry_hash(
            entry.type.value, entry.timestamp, entry.payload, entry.previous_hash,
        )

    def test_hash_is_sha256_hex(self, journal):
        journal.open()
        assert len(journal.head_hash) == 64
        int(journal.head_hash, 16)

    def test_key_order_does_not_change_hash(self):
        a = compute_entry_hash("DOCUMENT", "t", {"a": 1, "b": 2}, GENESIS_HASH)
        b = compute_entry_hash("DOCUMENT", "t", {"b": 2, "a": 1}, GENESIS_HASH)
        assert a == b


class TestPayloads:
    def test_document_amount_from_receipt(self):
        assert DocumentPayload(receipt=_receipt("7.35")).amount == Decimal("7.35")

    def test_close_payload_round_trip(self):
        payload = ClosePayload(closed_at="t", total_documents=2, total_amount=Decimal("10"))
        rebuilt = payload_from_dict(EntryType.CLOSE, payload.to_dict())
        assert rebuilt.total_amount == Decimal("10.00")
        assert rebuilt.total_documents == 2

    def test_malformed_payload_rejected(self):
        with pytest.raises(ValidationError):
            payload_from_dict(EntryType.DOCUMENT, {"nothing": True})

    def test_entry_from_dict_rejects_unknown_type(self):
        with pytest.raises(ValidationError):
            JournalEntry.from_dict({
                "number": 1, "type": "BOGUS", "timestamp": "t",
                "previous_hash": GENESIS_HASH, "hash": "x",
            })


class TestExport:
    def test_export_wire_format(self, journal):
        journal.open()
        journal.append(_receipt("2.50", 1))
        journal.append(_receipt("7.50", 2))
        journal.close()
        exported = journal.export("12345678901", "PEM-1", "2025-01-15")

        assert exported["vat_number"] == "12345678901"
        assert exported["device_id"] == "PEM-1"
        assert exported["reference_date"] == "2025-01-15"
        assert exported["document_count"] == 2
        assert exported["total_amount"] == "10.00"
        assert exported["head_hash"] == journal.head_hash
        assert len(exported["entries"]) == 4
        first = exported["entries"][0]
        assert set(first) == {
            "number", "type", "timestamp", "amount", "payload", "previous_hash", "hash",
        }

    def test_exported_entries_rebuild_and_verify(self, journal):
        journal.open()
        journal.append(_receipt("4.00"))
        journal.close()
        exported = journal.export("1", "D", "2025-01-15")
        entries = [JournalEntry.from_dict(e) for e in exported["entries"]]
        assert verify_chain(entries).valid is True


class TestPayloadIsolation:
    def test_mutating_appended_receipt_does_not_alter_chain(self, journal):
        receipt = _receipt("5.00", 1)
        journal.open()
        journal.append(receipt)
        receipt["total_amount"] = "500.00"
        assert journal.entries[1].payload["receipt"]["total_amount"] == "5.00"
        assert journal.verify() is True

    def test_mutating_returned_entries_does_not_alter_chain(self, journal):
        journal.open()
        journal.append(_receipt("5.00", 1))
        journal.entries[1].payload["receipt"]["total_amount"] = "500.00"
        assert journal.verify() is True

    def test_mutating_export_does_not_alter_chain(self, journal):
        journal.open()
        journal.append(_receipt("5.00", 1))
        journal.close()
        exported = journal.export("12345678901", "PEM-0001", "2025-01-15")
        exported["entries"][1]["payload"]["receipt"]["total_amount"] = "500.00"
        assert journal.verify() is True


class TestRestore:
    def _exported(self, journal):
        journal.open()
        journal.append(_receipt("3.00", 1))
        journal.close()
        return journal.export("12345678901", "PEM-0001", "2025-01-15")

    def test_restored_journal_reopens_and_extends_chain(self, journal):
        exported = self._exported(journal)
        restored = Journal.restore(exported, clock=_ticking_clock())
        assert restored.head_hash == exported["head_hash"]
        assert restored.is_open is False

        restored.open()
        restored.append(_receipt("2.00", 2))
        second = restored.close()

        assert second.total_documents == 1
        assert second.total_amount == Decimal("2.00")
        assert len(restored) == 6
        assert restored.verify() is True

    def test_broken_stored_journal_rejected(self, journal):
        exported = self._exported(journal)
        exported["entries"][1]["payload"]["receipt"]["total_amount"] = "30.00"
        with pytest.raises(IntegrityError):
            Journal.restore(exported)

    def test_unclosed_stored_journal_rejected(self, journal):
        journal.open()
        exported = journal.export("12345678901", "PEM-0001", "2025-01-15")
        with pytest.raises(StateError):
            Journal.restore(exported)
