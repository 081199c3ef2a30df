"""SQLAlchemy models for data received from emission devices."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from corrispettivi_engine.common.models import Base, TimestampMixin, generate_uuid


class SessionSeedModel(Base, TimestampMixin):
    __tablename__ = "session_seeds"

    session_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    seed: Mapped[str] = mapped_column(String(64), nullable=False)
    device_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)


class ReceiptModel(Base, TimestampMixin):
    __tablename__ = "receipts"
    __table_args__ = (
        Index("ix_receipts_session", "vat_number", "device_id", "reference_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    message_id: Mapped[str] = mapped_column(String(36), nullable=False, default=generate_uuid)
    content_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    vat_number: Mapped[str] = mapped_column(String(16), nullable=False)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_number: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_date: Mapped[str] = mapped_column(String(10), nullable=False)
    issued_at: Mapped[str] = mapped_column(String(40), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    blob_key: Mapped[str] = mapped_column(String(512), nullable=False)


class JournalModel(Base, TimestampMixin):
    __tablename__ = "journals"
    __table_args__ = (
        UniqueConstraint(
            "vat_number", "device_id", "reference_date", name="uq_journal_natural_key",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    message_id: Mapped[str] = mapped_column(String(36), nullable=False, default=generate_uuid)
    vat_number: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reference_date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    generated_at: Mapped[str] = mapped_column(String(40), nullable=False)
    version: Mapped[str] = mapped_column(String(10), nullable=False, default="1.0")
    document_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    head_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entries: Mapped[list] = mapped_column(JSON, default=list)
    integrity_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    integrity_errors: Mapped[list] = mapped_column(JSON, default=list)
    ingest_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_ingested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    blob_key: Mapped[str] = mapped_column(String(512), nullable=False)
