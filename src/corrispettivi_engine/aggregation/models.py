"""SQLAlchemy model for aggregated daily tax reports."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from corrispettivi_engine.common.models import Base, TimestampMixin, generate_uuid


class DailyReportModel(Base, TimestampMixin):
    __tablename__ = "daily_reports"
    __table_args__ = (
        UniqueConstraint(
            "vat_number", "device_id", "reference_date", name="uq_daily_report_natural_key",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    vat_number: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reference_date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    document_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vat_breakdown: Mapped[list] = mapped_column(JSON, default=list)
    journal_head_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # pending | accepted | rejected | unresolved
    transmission_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    transmitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    outcome_description: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    outcome_received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
