"""SQLAlchemy models for recorded anomalies."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from corrispettivi_engine.common.models import Base, TimestampMixin, generate_uuid


class AnomalyModel(Base, TimestampMixin):
    __tablename__ = "anomalies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    anomaly_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(10), nullable=False, default="pel", index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="medium", index=True)
    vat_number: Mapped[str | None] = mapped_column(String(16), nullable=True, index=True)
    device_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reference_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    details: Mapped[str] = mapped_column(Text, default="")
    detail: Mapped[dict] = mapped_column(JSON, default=dict)
    blob_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
