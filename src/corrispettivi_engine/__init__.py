"""Corrispettivi-Engine: electronic receipts from emission point to tax authority."""

from corrispettivi_engine.client import PELClient
from corrispettivi_engine.journal.chain import Journal, JournalEntry, verify_chain
from corrispettivi_engine.journal.integrity import check_journal_integrity
from corrispettivi_engine.pem.session import EmissionPointConfig, EmissionPointSession
from corrispettivi_engine.receipts.builder import LineInput, Receipt, ReceiptBuilder

__all__ = [
    "PELClient",
    "Journal",
    "JournalEntry",
    "verify_chain",
    "check_journal_integrity",
    "EmissionPointConfig",
    "EmissionPointSession",
    "LineInput",
    "Receipt",
    "ReceiptBuilder",
]
__version__ = "0.1.0"
