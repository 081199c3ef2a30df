"""Receipt builder: line items to a commercial document with VAT summary.

VAT is extracted from VAT-inclusive line totals:

    taxable = line_total / (1 + vat_rate / 100)
    tax     = line_total - taxable

Per-line values are accumulated unrounded per ``(vat_rate, nature)`` group
and rounded once at the group level, so many small lines do not drift.
The group tax is the rounded group gross minus the rounded taxable, which
keeps ``taxable + tax`` equal to the group's gross to the cent.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from corrispettivi_engine.common.exceptions import ValidationError
from corrispettivi_engine.common.money import (
    ZERO,
    format_amount,
    round_cents,
    to_decimal,
)

DOCUMENT_VERSION = "1.0"
DOCUMENT_TYPE = "TD01"

# Exemption natures for non-taxed lines (N1 excluded, N2 not subject, ...).
VALID_NATURES: frozenset[str] = frozenset({"N1", "N2", "N3", "N4", "N5", "N6", "N7"})

HUNDRED = Decimal("100")


def vat_group_key(vat_rate: Decimal, nature: Optional[str]) -> str:
    """Grouping label: ``VAT_<rate>`` for taxed lines, ``NAT_<code>`` otherwise."""
    if nature:
        return f"NAT_{nature}"
    return f"VAT_{vat_rate.normalize():f}"


def split_gross(gross: Decimal, vat_rate: Decimal) -> tuple[Decimal, Decimal]:
    """Unrounded (taxable, tax) for a VAT-inclusive amount."""
    taxable = gross / (1 + vat_rate / HUNDRED)
    return taxable, gross - taxable


@dataclass(frozen=True)
class LineInput:
    """A sale line as entered at the till."""

    description: str
    quantity: Any
    unit_price: Any
    vat_rate: Any = Decimal("22")
    nature: Optional[str] = None


@dataclass(frozen=True)
class ReceiptLine:
    line_number: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal
    total: Decimal
    nature: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_number": self.line_number,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "vat_rate": str(self.vat_rate),
            "nature": self.nature,
            "total": format_amount(self.total),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReceiptLine":
        return cls(
            line_number=int(data["line_number"]),
            description=data.get("description", ""),
            quantity=to_decimal(data["quantity"]),
            unit_price=to_decimal(data["unit_price"]),
            vat_rate=to_decimal(data.get("vat_rate", "0")),
            total=to_decimal(data["total"]),
            nature=data.get("nature"),
        )


@dataclass(frozen=True)
class VatSummary:
    vat_rate: Decimal
    taxable: Decimal
    tax: Decimal
    nature: Optional[str] = None

    @property
    def key(self) -> str:
        return vat_group_key(self.vat_rate, self.nature)

    @property
    def gross(self) -> Decimal:
        return self.taxable + self.tax

    def to_dict(self) -> dict[str, Any]:
        return {
            "vat_rate": str(self.vat_rate),
            "nature": self.nature,
            "taxable": format_amount(self.taxable),
            "tax": format_amount(self.tax),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VatSummary":
        return cls(
            vat_rate=to_decimal(data.get("vat_rate", "0")),
            taxable=to_decimal(data["taxable"]),
            tax=to_decimal(data["tax"]),
            nature=data.get("nature"),
        )


@dataclass(frozen=True)
class Receipt:
    """An issued commercial document. Immutable once built."""

    vat_number: str
    business_name: str
    device_id: str
    document_number: int
    issued_at: str
    reference_date: str
    lines: tuple[ReceiptLine, ...]
    vat_summary: tuple[VatSummary, ...]
    total_amount: Decimal
    document_type: str = DOCUMENT_TYPE
    version: str = DOCUMENT_VERSION

    @property
    def display_number(self) -> str:
        return f"{self.document_number:06d}"

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form; amounts are strings so hashing is exact."""
        return {
            "version": self.version,
            "document_type": self.document_type,
            "vat_number": self.vat_number,
            "business_name": self.business_name,
            "device_id": self.device_id,
            "document_number": self.document_number,
            "issued_at": self.issued_at,
            "reference_date": self.reference_date,
            "lines": [line.to_dict() for line in self.lines],
            "vat_summary": [group.to_dict() for group in self.vat_summary],
            "total_amount": format_amount(self.total_amount),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Receipt":
        return cls(
            vat_number=data["vat_number"],
            business_name=data.get("business_name", ""),
            device_id=data["device_id"],
            document_number=int(data["document_number"]),
            issued_at=data["issued_at"],
            reference_date=data.get("reference_date") or data["issued_at"][:10],
            lines=tuple(ReceiptLine.from_dict(l) for l in data.get("lines", [])),
            vat_summary=tuple(VatSummary.from_dict(g) for g in data.get("vat_summary", [])),
            total_amount=to_decimal(data["total_amount"]),
            document_type=data.get("document_type", DOCUMENT_TYPE),
            version=data.get("version", DOCUMENT_VERSION),
        )

    def content_hash(self) -> str:
        return receipt_content_hash(self.to_dict())

    def summary_total(self) -> Decimal:
        return sum((g.gross for g in self.vat_summary), ZERO)


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def receipt_content_hash(receipt_dict: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON of a receipt's dict form."""
    return hashlib.sha256(canonical_json(receipt_dict).encode("utf-8")).hexdigest()


@dataclass
class _GroupAccumulator:
    vat_rate: Decimal
    nature: Optional[str]
    gross: Decimal = ZERO
    taxable: Decimal = ZERO

    def summary(self) -> VatSummary:
        taxable = round_cents(self.taxable)
        return VatSummary(
            vat_rate=self.vat_rate,
            nature=self.nature,
            taxable=taxable,
            tax=round_cents(self.gross) - taxable,
        )


def summarize_vat(
    groups: list[tuple[Decimal, Optional[str], Decimal]],
) -> list[VatSummary]:
    """Group ``(vat_rate, nature, gross)`` triples into rounded summaries.

    Groups keep first-seen order.
    """
    accumulators: dict[str, _GroupAccumulator] = {}
    for vat_rate, nature, gross in groups:
        key = vat_group_key(vat_rate, nature)
        acc = accumulators.get(key)
        if acc is None:
            acc = accumulators[key] = _GroupAccumulator(vat_rate=vat_rate, nature=nature)
        taxable = gross if nature else split_gross(gross, vat_rate)[0]
        acc.gross += gross
        acc.taxable += taxable
    return [acc.summary() for acc in accumulators.values()]


class ReceiptBuilder:
    """Builds receipts for one emission device and session.

    Document numbers must strictly increase across calls on the same builder.
    ``last_number`` resumes numbering after documents already issued that day.
    """

    def __init__(
        self,
        vat_number: str,
        business_name: str,
        device_id: str,
        reference_date: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        last_number: int = 0,
    ):
        self.vat_number = vat_number
        self.business_name = business_name
        self.device_id = device_id
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.reference_date = reference_date or self._clock().date().isoformat()
        self._last_number = last_number

    @property
    def last_number(self) -> int:
        return self._last_number

    def next_document_number(self) -> int:
        return self._last_number + 1

    def build(self, lines: list[LineInput], document_number: int) -> Receipt:
        if document_number <= self._last_number:
            raise ValidationError(
                f"Document number {document_number} is not greater than {self._last_number}"
            )
        receipt_lines = _validate_lines(lines)

        summaries = summarize_vat(
            [(line.vat_rate, line.nature, line.total) for line in receipt_lines]
        )
        total = round_cents(sum((line.total for line in receipt_lines), ZERO))

        receipt = Receipt(
            vat_number=self.vat_number,
            business_name=self.business_name,
            device_id=self.device_id,
            document_number=document_number,
            issued_at=self._clock().isoformat(),
            reference_date=self.reference_date,
            lines=tuple(receipt_lines),
            vat_summary=tuple(summaries),
            total_amount=total,
        )
        self._last_number = document_number
        return receipt


def _validate_lines(lines: list[LineInput]) -> list[ReceiptLine]:
    if not lines:
        raise ValidationError("A receipt needs at least one line")

    errors: list[str] = []
    result: list[ReceiptLine] = []
    for index, line in enumerate(lines, start=1):
        try:
            quantity = to_decimal(line.quantity)
            unit_price = to_decimal(line.unit_price)
            vat_rate = to_decimal(line.vat_rate)
        except ValueError as exc:
            errors.append(f"Line {index}: {exc}")
            continue

        if unit_price < 0:
            errors.append(f"Line {index}: unit price must not be negative")
        if quantity <= 0:
            errors.append(f"Line {index}: quantity must be positive")
        if not (0 <= vat_rate <= 100):
            errors.append(f"Line {index}: VAT rate must be between 0 and 100")
        if line.nature is not None:
            if line.nature not in VALID_NATURES:
                errors.append(f"Line {index}: unknown exemption nature {line.nature!r}")
            elif vat_rate != 0:
                errors.append(f"Line {index}: exempt lines must have a 0% VAT rate")

        result.append(ReceiptLine(
            line_number=index,
            description=line.description,
            quantity=quantity,
            unit_price=unit_price,
            vat_rate=vat_rate,
            total=quantity * unit_price,
            nature=line.nature,
        ))

    if errors:
        raise ValidationError("; ".join(errors), errors=errors)
    return result


def reference_date_of(issued_at: str) -> str:
    """Calendar date of an ISO timestamp."""
    return date.fromisoformat(issued_at[:10]).isoformat()
