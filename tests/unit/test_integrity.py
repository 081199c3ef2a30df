"""Tests for the elaboration point journal integrity check."""

import copy

import pytest

from conftest import run_day
from corrispettivi_engine.common.exceptions import IntegrityError
from corrispettivi_engine.journal.integrity import check_journal_integrity
from corrispettivi_engine.receipts.builder import LineInput


def _journal(closed_day):
    return copy.deepcopy(closed_day.journal)


class TestValidJournal:
    def test_exported_journal_passes(self, closed_day):
        report = check_journal_integrity(_journal(closed_day))
        assert report.valid is True
        assert report.errors == []
        assert report.chain.valid is True
        assert report.chain.entries_checked == 4
        assert str(report.computed_total) == "10.00"

    def test_declared_total_within_tolerance_passes(self, closed_day):
        journal = _journal(closed_day)
        journal["total_amount"] = "10.01"
        assert check_journal_integrity(journal).valid is True

    def test_mixed_rates_day_passes(self):
        day = run_day([
            [LineInput("Vino", 1, "12.90", 22), LineInput("Pane", 2, "1.10", 4)],
            [LineInput("Giornale", 1, "1.70", 0, nature="N2")],
        ])
        assert check_journal_integrity(day.journal).valid is True


class TestInvalidJournal:
    def test_total_mismatch_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["total_amount"] = "12.00"
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert any("total mismatch" in e for e in report.errors)
        # The chain itself is intact; only the declared total is wrong.
        assert report.chain.valid is True

    def test_broken_chain_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["entries"][1]["timestamp"] = "2030-01-01T00:00:00+00:00"
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert report.chain.break_at == 2

    def test_tampered_amount_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["entries"][1]["amount"] = "0.50"
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert any("differs from receipt total" in e for e in report.errors)

    def test_forged_open_amount_with_raised_total_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["entries"][0]["amount"] = "1000.00"
        journal["total_amount"] = "1010.00"
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert "Entry 1: OPEN entry must carry amount 0, got 1000.00" in report.errors
        assert any("total mismatch" in e for e in report.errors)
        assert str(report.computed_total) == "10.00"

    def test_forged_close_amount_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["entries"][-1]["amount"] = "5.00"
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert any("CLOSE entry must carry amount 0" in e for e in report.errors)

    def test_close_payload_totals_checked_against_documents(self, closed_day):
        journal = _journal(closed_day)
        journal["entries"][-1]["payload"]["total_amount"] = "20.00"
        journal["entries"][-1]["payload"]["total_documents"] = 3
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert "Entry 4: CLOSE declares 3 documents, session has 2" in report.errors
        assert any("CLOSE declares total 20.00" in e for e in report.errors)

    def test_unclosed_journal_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["entries"] = journal["entries"][:-1]
        journal["head_hash"] = journal["entries"][-1]["hash"]
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert "Journal does not end with a CLOSE entry" in report.errors

    def test_numbering_gap_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["entries"][2]["number"] = 5
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert any("numbering" in e for e in report.errors)

    def test_missing_entry_fields_flagged(self, closed_day):
        journal = _journal(closed_day)
        del journal["entries"][1]["timestamp"]
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert any("missing required fields: timestamp" in e for e in report.errors)
        assert report.chain is None

    def test_document_count_mismatch_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["document_count"] = 3
        report = check_journal_integrity(journal)
        assert report.valid is False
        assert any("Document count mismatch" in e for e in report.errors)

    def test_head_hash_mismatch_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["head_hash"] = "f" * 64
        assert check_journal_integrity(journal).valid is False

    def test_empty_journal_flagged(self):
        report = check_journal_integrity({"entries": [], "total_amount": "0.00"})
        assert report.valid is False

    def test_unreadable_total_flagged(self, closed_day):
        journal = _journal(closed_day)
        journal["total_amount"] = "ten euros"
        report = check_journal_integrity(journal)
        assert report.valid is False

    def test_report_serializes(self, closed_day):
        journal = _journal(closed_day)
        journal["total_amount"] = "99.00"
        data = check_journal_integrity(journal).to_dict()
        assert data["valid"] is False
        assert data["computed_total"] == "10.00"
        assert data["chain"]["valid"] is True


class TestRaiseForErrors:
    def test_valid_report_does_not_raise(self, closed_day):
        check_journal_integrity(_journal(closed_day)).raise_for_errors()

    def test_invalid_report_raises_with_errors(self, closed_day):
        journal = _journal(closed_day)
        journal["document_count"] = 5
        report = check_journal_integrity(journal)
        with pytest.raises(IntegrityError) as exc_info:
            report.raise_for_errors()
        assert exc_info.value.code == "INTEGRITY_ERROR"
        assert exc_info.value.errors == report.errors
