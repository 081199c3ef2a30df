"""Tests for the receipt builder and VAT grouping."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from corrispettivi_engine.common.exceptions import ValidationError
from corrispettivi_engine.receipts.builder import (
    LineInput,
    Receipt,
    ReceiptBuilder,
    reference_date_of,
    summarize_vat,
    vat_group_key,
)


@pytest.fixture
def builder():
    return ReceiptBuilder(
        vat_number="12345678901",
        business_name="Bar Centrale",
        device_id="PEM-0001",
        clock=lambda: datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc),
    )


class TestBuild:
    def test_single_line_vat_extraction(self, builder):
        receipt = builder.build([LineInput("Caffe", 2, "2.50", 10)], 1)
        assert receipt.total_amount == Decimal("5.00")
        (group,) = receipt.vat_summary
        assert group.vat_rate == Decimal("10")
        assert group.taxable == Decimal("4.55")
        assert group.tax == Decimal("0.45")

    def test_total_equals_vat_summary(self, builder):
        receipt = builder.build([
            LineInput("Pane", 3, "1.35", 4),
            LineInput("Vino", 1, "12.90", 22),
            LineInput("Giornale", 1, "1.70", 0, nature="N2"),
            LineInput("Pasta", 2, "0.99", 10),
        ], 1)
        assert abs(receipt.total_amount - receipt.summary_total()) <= Decimal("0.01")
        assert receipt.total_amount == Decimal("20.63")

    def test_groups_by_rate_and_nature(self, builder):
        receipt = builder.build([
            LineInput("A", 1, "1.00", 22),
            LineInput("B", 1, "1.00", 10),
            LineInput("C", 1, "1.00", 22),
            LineInput("D", 1, "1.00", 0, nature="N4"),
        ], 1)
        assert [g.key for g in receipt.vat_summary] == ["VAT_22", "VAT_10", "NAT_N4"]

    def test_exempt_group_has_no_tax(self, builder):
        receipt = builder.build([LineInput("Francobollo", 2, "1.20", 0, nature="N1")], 1)
        (group,) = receipt.vat_summary
        assert group.taxable == Decimal("2.40")
        assert group.tax == Decimal("0.00")

    def test_rounding_happens_per_group_not_per_line(self, builder):
        # Per-line rounding would give 3 x 0.08 = 0.24 taxable.
        receipt = builder.build([LineInput("Caramella", 1, "0.10", 22)] * 3, 1)
        (group,) = receipt.vat_summary
        assert group.taxable == Decimal("0.25")
        assert group.tax == Decimal("0.05")

    def test_half_up_rounding(self):
        (group,) = summarize_vat([(Decimal("0"), "N2", Decimal("0.005"))])
        assert group.taxable == Decimal("0.01")

    def test_line_numbers_and_totals(self, builder):
        receipt = builder.build([
            LineInput("A", 2, "1.25", 22),
            LineInput("B", "0.5", "3.00", 22),
        ], 1)
        assert [l.line_number for l in receipt.lines] == [1, 2]
        assert [l.total for l in receipt.lines] == [Decimal("2.50"), Decimal("1.500")]

    def test_float_prices_are_exact(self, builder):
        receipt = builder.build([LineInput("A", 3, 0.1, 22)], 1)
        assert receipt.total_amount == Decimal("0.30")

    def test_receipt_metadata(self, builder):
        receipt = builder.build([LineInput("A", 1, "1.00", 22)], 7)
        assert receipt.display_number == "000007"
        assert receipt.reference_date == "2025-01-15"
        assert receipt.issued_at.startswith("2025-01-15T10:30")
        assert receipt.document_type == "TD01"


class TestValidation:
    def test_empty_lines_rejected(self, builder):
        with pytest.raises(ValidationError):
            builder.build([], 1)

    def test_negative_unit_price_rejected(self, builder):
        with pytest.raises(ValidationError) as exc_info:
            builder.build([LineInput("Sconto", 1, "-1.00", 22)], 1)
        assert "negative" in exc_info.value.message

    def test_zero_quantity_rejected(self, builder):
        with pytest.raises(ValidationError):
            builder.build([LineInput("A", 0, "1.00", 22)], 1)

    def test_out_of_range_rate_rejected(self, builder):
        with pytest.raises(ValidationError):
            builder.build([LineInput("A", 1, "1.00", 150)], 1)

    def test_unknown_nature_rejected(self, builder):
        with pytest.raises(ValidationError):
            builder.build([LineInput("A", 1, "1.00", 0, nature="N9")], 1)

    def test_nature_with_rate_rejected(self, builder):
        with pytest.raises(ValidationError):
            builder.build([LineInput("A", 1, "1.00", 22, nature="N2")], 1)

    def test_non_numeric_price_rejected(self, builder):
        with pytest.raises(ValidationError):
            builder.build([LineInput("A", 1, "abc", 22)], 1)

    def test_all_line_errors_reported(self, builder):
        with pytest.raises(ValidationError) as exc_info:
            builder.build([
                LineInput("A", 1, "-1.00", 22),
                LineInput("B", -2, "1.00", 22),
            ], 1)
        assert len(exc_info.value.errors) == 2

    def test_document_number_must_increase(self, builder):
        builder.build([LineInput("A", 1, "1.00", 22)], 1)
        with pytest.raises(ValidationError):
            builder.build([LineInput("A", 1, "1.00", 22)], 1)

    def test_failed_build_does_not_consume_number(self, builder):
        with pytest.raises(ValidationError):
            builder.build([], 1)
        assert builder.next_document_number() == 1


class TestSerialization:
    def test_dict_round_trip_keeps_content_hash(self, builder):
        receipt = builder.build([
            LineInput("Caffe", 2, "2.50", 10),
            LineInput("Acqua", 1, "1.00", 0, nature="N2"),
        ], 1)
        rebuilt = Receipt.from_dict(receipt.to_dict())
        assert rebuilt == receipt
        assert rebuilt.content_hash() == receipt.content_hash()

    def test_amounts_serialized_as_strings(self, builder):
        data = builder.build([LineInput("A", 1, "1.00", 22)], 1).to_dict()
        assert data["total_amount"] == "1.00"
        assert data["vat_summary"][0]["taxable"] == "0.82"

    def test_distinct_receipts_distinct_hashes(self, builder):
        a = builder.build([LineInput("A", 1, "1.00", 22)], 1)
        b = builder.build([LineInput("A", 1, "1.00", 22)], 2)
        assert a.content_hash() != b.content_hash()


def test_vat_group_key_normalizes_rate():
    assert vat_group_key(Decimal("10.00"), None) == "VAT_10"
    assert vat_group_key(Decimal("5.5"), None) == "VAT_5.5"
    assert vat_group_key(Decimal("0"), "N3") == "NAT_N3"


def test_reference_date_of():
    assert reference_date_of("2025-01-15T23:59:59+01:00") == "2025-01-15"
