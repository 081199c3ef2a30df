"""XML export of journals and receipts for audit artifacts."""

import xml.etree.ElementTree as ET
from typing import Any, Iterable, Optional


def _compact_date(reference_date: str) -> str:
    return reference_date.replace("-", "")


def journal_file_name(device_id: str, reference_date: str) -> str:
    return f"J_{device_id}_{_compact_date(reference_date)}.xml"


def document_file_name(document_number: int, device_id: str, reference_date: str) -> str:
    return f"DC_{document_number:06d}_{device_id}_{_compact_date(reference_date)}.xml"


def unique_name(name: str, token: str, taken: set[str]) -> str:
    """Return ``name``, or ``name`` with ``_token`` before the extension if already taken."""
    if name in taken:
        stem, dot, ext = name.rpartition(".")
        name = f"{stem}_{token}{dot}{ext}"
    taken.add(name)
    return name


def _text(parent: ET.Element, tag: str, value: Any) -> ET.Element:
    element = ET.SubElement(parent, tag)
    element.text = "" if value is None else str(value)
    return element


def _serialize(root: ET.Element) -> bytes:
    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def journal_to_xml(journal: dict[str, Any]) -> bytes:
    root = ET.Element("Journal", version=str(journal.get("version") or "1.0"))
    _text(root, "VatNumber", journal["vat_number"])
    _text(root, "DeviceId", journal["device_id"])
    _text(root, "ReferenceDate", journal["reference_date"])
    _text(root, "GeneratedAt", journal.get("generated_at"))
    _text(root, "DocumentCount", journal.get("document_count"))
    _text(root, "TotalAmount", journal.get("total_amount"))
    _text(root, "HeadHash", journal.get("head_hash"))
    _text(root, "IntegrityValid", "true" if journal.get("integrity_valid") else "false")

    entries = ET.SubElement(root, "Entries")
    for entry in journal.get("entries") or []:
        node = ET.SubElement(
            entries, "Entry",
            number=str(entry.get("number", "")),
            type=str(entry.get("type", "")),
        )
        _text(node, "Timestamp", entry.get("timestamp"))
        _text(node, "Amount", entry.get("amount"))
        _text(node, "PreviousHash", entry.get("previous_hash"))
        _text(node, "Hash", entry.get("hash"))
    return _serialize(root)


def receipt_to_xml(receipt: dict[str, Any], content_hash: Optional[str] = None) -> bytes:
    root = ET.Element(
        "CommercialDocument",
        version=str(receipt.get("version") or "1.0"),
        type=str(receipt.get("document_type") or "TD01"),
    )
    _text(root, "VatNumber", receipt["vat_number"])
    _text(root, "BusinessName", receipt.get("business_name"))
    _text(root, "DeviceId", receipt["device_id"])
    _text(root, "DocumentNumber", f"{int(receipt['document_number']):06d}")
    _text(root, "IssuedAt", receipt.get("issued_at"))
    _text(root, "ReferenceDate", receipt.get("reference_date"))

    lines = ET.SubElement(root, "Lines")
    for line in receipt.get("lines") or []:
        node = ET.SubElement(lines, "Line", number=str(line.get("line_number", "")))
        _text(node, "Description", line.get("description"))
        _text(node, "Quantity", line.get("quantity"))
        _text(node, "UnitPrice", line.get("unit_price"))
        _text(node, "VatRate", line.get("vat_rate"))
        if line.get("nature"):
            _text(node, "Nature", line["nature"])
        _text(node, "Total", line.get("total"))

    _vat_summary(root, receipt.get("vat_summary") or [])
    _text(root, "TotalAmount", receipt.get("total_amount"))
    if content_hash:
        _text(root, "ContentHash", content_hash)
    return _serialize(root)


def _vat_summary(root: ET.Element, groups: Iterable[dict[str, Any]]) -> None:
    summary = ET.SubElement(root, "VatSummary")
    for group in groups:
        node = ET.SubElement(summary, "Group")
        _text(node, "VatRate", group.get("vat_rate"))
        if group.get("nature"):
            _text(node, "Nature", group["nature"])
        _text(node, "Taxable", group.get("taxable"))
        _text(node, "Tax", group.get("tax"))
